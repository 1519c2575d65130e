from .config import (
    DEFAULT_BUCKET_NAME,
    HOST,
    PROTOCOL,
    CouchbaseConfigError,
    validate_config,
    get_cluster,
    get_default_bucket,
    check_connection
)
from .keyspace import (
    Keyspace,
    get_keyspace,
)
from .base_model import (
    BaseModelCouchbase,
    BaseCouchbaseEntityData,
    DataT,
    T
)

# External re-exports so callers don't reach into the SDK directly
from couchbase.exceptions import DocumentExistsException, DocumentNotFoundException, CASMismatchException
