"""Storage adapters: keyed document store and atomic counter store."""

from streamguard.stores.protocol import CounterStore, DocumentStore, Filter

__all__ = ["CounterStore", "DocumentStore", "Filter"]
