import os
import uuid
from dataclasses import dataclass
from typing import Optional, Tuple
from couchbase.exceptions import DocumentNotFoundException
from couchbase.result import MutationResult
from couchbase.options import QueryOptions, RemoveOptions, ReplaceOptions
from . import config

DEFAULT_SCOPE_NAME = os.environ.get('COUCHBASE_SCOPE', '_default')

@dataclass
class Keyspace:
    bucket_name: str
    scope_name: str
    collection_name: str

    @classmethod
    def from_string(cls, keyspace: str) -> 'Keyspace':
        parts = keyspace.split('.')
        if len(parts) != 3:
            raise ValueError(
                "Invalid keyspace format. Expected 'bucket_name.scope_name.collection_name', "
                f"got '{keyspace}'"
            )
        return cls(*parts)

    def __str__(self) -> str:
        return f"`{self.bucket_name}`.`{self.scope_name}`.`{self.collection_name}`"

    async def query(self, query: str, **kwargs) -> list:
        """Run a N1QL query. Keyword arguments become named parameters."""
        cluster = await config.get_cluster()
        query = query.replace("${keyspace}", str(self))
        options = QueryOptions(named_parameters=kwargs) if kwargs else QueryOptions()
        result = cluster.query(query, options)
        return [row async for row in result]

    async def get_collection(self):
        cluster = await config.get_cluster()
        bucket = cluster.bucket(self.bucket_name)
        return bucket.scope(self.scope_name).collection(self.collection_name)

    async def get(self, key: str) -> Optional[Tuple[dict, int]]:
        """Fetch a document and its CAS, or None when the key does not exist."""
        collection = await self.get_collection()
        try:
            result = await collection.get(key)
        except DocumentNotFoundException:
            return None
        return result.content_as[dict], result.cas

    async def insert(self, value: dict, key: Optional[str] = None, **kwargs) -> MutationResult:
        """Insert a new document. Raises DocumentExistsException on a taken key."""
        if key is None:
            key = str(uuid.uuid4())
        collection = await self.get_collection()
        return await collection.insert(key, value, **kwargs)

    async def replace(self, key: str, value: dict, cas: Optional[int] = None) -> MutationResult:
        """Replace a document; with *cas* the write fails with CASMismatchException
        if the document changed since it was read."""
        collection = await self.get_collection()
        if cas:
            return await collection.replace(key, value, ReplaceOptions(cas=cas))
        return await collection.replace(key, value)

    async def upsert(self, key: str, value: dict, **kwargs) -> MutationResult:
        """Insert or update a document (idempotent write).

        Args:
            key: Document key (required for idempotency)
            value: Document value to store
            **kwargs: Additional options passed to collection.upsert()

        Returns:
            MutationResult from the upsert operation
        """
        collection = await self.get_collection()
        return await collection.upsert(key, value, **kwargs)

    async def remove(self, key: str, cas: Optional[int] = None) -> int:
        collection = await self.get_collection()
        if cas:
            result = await collection.remove(key, RemoveOptions(cas=cas))
        else:
            result = await collection.remove(key)
        return result.cas

def get_keyspace(collection_name: str, scope_name: Optional[str] = None, bucket_name: Optional[str] = None) -> Keyspace:
    """
    Create a Keyspace instance with optional scope and bucket parameters.

    Args:
        collection_name: Name of the collection
        scope_name: Name of the scope (defaults to COUCHBASE_SCOPE or "_default")
        bucket_name: Name of the bucket (defaults to COUCHBASE_BUCKET)

    Returns:
        Keyspace instance
    """
    return Keyspace(
        bucket_name or config.DEFAULT_BUCKET_NAME,
        scope_name or DEFAULT_SCOPE_NAME,
        collection_name,
    )
