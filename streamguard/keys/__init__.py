"""URL-signing key rotation and signed-URL issuing."""

from streamguard.keys.models import RotationKey, SignedUrl
from streamguard.keys.rotation import KeyRotationManager
from streamguard.keys.storage import LocalObjectStorage, ObjectStorage

__all__ = ["KeyRotationManager", "LocalObjectStorage", "ObjectStorage", "RotationKey", "SignedUrl"]
