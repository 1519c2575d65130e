from typing import Any, Dict, Literal
from datetime import datetime
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData


HistoryAction = Literal["CREATE", "UPDATE", "CANCEL", "PLACE", "WIN", "LOSE", "FAIL"]


class BidHistoryData(BaseCouchbaseEntityData):
    bid_id: str
    action: HistoryAction
    timestamp: datetime
    details: Dict[str, Any] = {}


class BidHistoryEntry(BaseModelCouchbase[BidHistoryData]):
    _collection_name = "bid_history"
