"""Storage collaborator port and implementations."""

from returnflow.storage.base import Record, Storage
from returnflow.storage.memory import InMemoryStorage
from returnflow.storage.seed import load_policy_seed, read_policy_seed

__all__ = [
    "Record",
    "Storage",
    "InMemoryStorage",
    "load_policy_seed",
    "read_policy_seed",
]
