import uuid
from datetime import datetime, timezone
from typing import Optional, TypeVar, Generic, ClassVar
from pydantic import BaseModel
from couchbase.exceptions import DocumentNotFoundException
from .keyspace import Keyspace, get_keyspace

class BaseCouchbaseEntityData(BaseModel):
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

DataT = TypeVar("DataT", bound=BaseCouchbaseEntityData)
T = TypeVar("T", bound="BaseModelCouchbase")

class BaseModelCouchbase(BaseModel, Generic[DataT]):
    """A document: its key, its typed body and the CAS it was read at.

    ``cas`` is the optimistic-concurrency token. ``update`` replaces the
    document only if it is unchanged since it was read and otherwise raises
    ``CASMismatchException``.
    """

    id: str
    data: DataT
    cas: Optional[int] = None

    _collection_name: ClassVar[str] = ""

    @staticmethod
    def to_document(data: BaseCouchbaseEntityData) -> dict:
        return data.model_dump(mode='json')

    @classmethod
    def get_keyspace(cls) -> Keyspace:
        if not cls._collection_name:
            raise ValueError(f"_collection_name not set for {cls.__name__}")
        return get_keyspace(cls._collection_name)

    @classmethod
    def from_row(cls: type[T], row: dict) -> Optional[T]:
        """Build an entity from a ``SELECT META().id, * FROM ...`` row."""
        data = row.get(cls._collection_name)
        if not data:
            return None
        return cls(id=row["id"], data=data)

    @classmethod
    async def get(cls: type[T], id: str) -> Optional[T]:
        found = await cls.get_keyspace().get(id)
        if found is None:
            return None
        data, cas = found
        return cls(id=id, data=data, cas=cas)

    @classmethod
    async def create(cls: type[T], data: DataT, key: Optional[str] = None) -> T:
        if key is None:
            key = str(uuid.uuid4())

        now = datetime.now(timezone.utc)
        if data.created_at is None:
            data.created_at = now
        data.updated_at = now

        result = await cls.get_keyspace().insert(cls.to_document(data), key=key)
        return cls(id=key, data=data, cas=result.cas)

    @classmethod
    async def create_or_update(cls: type[T], key: str, data: DataT) -> T:
        """Idempotently create or update a document with a specific key.

        Upsert semantics: a retried call with the same key overwrites the
        earlier write instead of duplicating it, which makes it safe to call
        from jobs that may be delivered more than once.
        """
        now = datetime.now(timezone.utc)
        if data.created_at is None:
            data.created_at = now
        data.updated_at = now

        result = await cls.get_keyspace().upsert(key, cls.to_document(data))
        return cls(id=key, data=data, cas=result.cas)

    @classmethod
    async def update(cls: type[T], item: T) -> T:
        item.data.updated_at = datetime.now(timezone.utc)
        result = await cls.get_keyspace().replace(item.id, cls.to_document(item.data), cas=item.cas)
        item.cas = result.cas
        return item

    @classmethod
    async def delete(cls: type[T], id: str) -> bool:
        try:
            await cls.get_keyspace().remove(id)
            return True
        except DocumentNotFoundException:
            return False
