from .sql_backend import SqlStorageBackend
from .stores import ComputationStore, ContractStore, EventStore, Stores, TransformationStore

__all__ = [
    'SqlStorageBackend',
    'Stores',
    'EventStore',
    'TransformationStore',
    'ContractStore',
    'ComputationStore'
]
