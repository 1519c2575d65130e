"""
HTTP client for the marketplace API.

    GET  /items/{item_id}           -> {item_id, current_price, end_time}
    POST /items/{item_id}/bids      -> {bid_id, accepted, message}
    GET  /items/{item_id}/outcome   -> {won, winning_price, winning_bidder_is_us, final}

HTTP failures are translated into the engine's error taxonomy here; the
engine never sees an HttpError.
"""

from typing import Any, Dict, Optional
from urllib.parse import quote

from pydantic import ValidationError as PydanticValidationError

from clients import http
from clients.http import HttpError, HttpStatusError, HttpTransportError
from conf import MarketplaceConf
from engine.errors import (
    CredentialError,
    MarketplaceError,
    MarketplacePermanentError,
    MarketplaceTransientError,
)
from engine.ports import AuctionOutcome, Credential, ItemState, PlaceBidResult
from utils import log

logger = log.get_logger(__name__)


def translate_http_error(e: HttpError, what: str) -> MarketplaceError:
    if isinstance(e, HttpTransportError):
        return MarketplaceTransientError(f"{what}: {e}")
    if isinstance(e, HttpStatusError):
        if e.is_retryable:
            return MarketplaceTransientError(f"{what}: HTTP {e.status}")
        if e.status in (401, 403):
            return CredentialError(f"{what}: marketplace refused the credential (HTTP {e.status})")
        return MarketplacePermanentError(f"{what}: HTTP {e.status} {e.body}")
    return MarketplacePermanentError(f"{what}: {e}")


class HttpMarketplaceClient:
    def __init__(self, conf: MarketplaceConf):
        self.conf = conf

    def _url(self, item_id: str, suffix: str = "") -> str:
        return f"{self.conf.base_url}/items/{quote(item_id, safe='')}{suffix}"

    def _headers(self, credential: Optional[Credential] = None) -> Dict[str, str]:
        headers = {}
        if self.conf.api_key:
            headers["X-Api-Key"] = self.conf.api_key
        if credential is not None:
            headers["Authorization"] = f"Bearer {credential.access_token}"
        return headers

    async def _call(self, method: str, url: str, what: str, headers: Dict[str, str], json_data=None) -> Any:
        try:
            return await http.request(
                method, url, headers=headers, json_data=json_data, timeout=self.conf.timeout_seconds
            )
        except HttpError as e:
            raise translate_http_error(e, what) from e

    async def get_item_state(self, item_id: str) -> ItemState:
        what = f"GET item {item_id}"
        body = await self._call("GET", self._url(item_id), what, self._headers())
        try:
            return ItemState.model_validate({"item_id": item_id, **(body or {})})
        except PydanticValidationError as e:
            raise MarketplacePermanentError(f"{what}: unexpected response {body!r}") from e

    async def place_bid(self, item_id: str, amount: int, credential: Credential) -> PlaceBidResult:
        what = f"POST bid on {item_id}"
        body = await self._call(
            "POST", self._url(item_id, "/bids"), what, self._headers(credential), json_data={"amount": amount}
        )
        body = body or {}
        logger.info(f"Marketplace answered bid on {item_id}: accepted={body.get('accepted')}")
        return PlaceBidResult(
            external_bid_id=body.get("bid_id"),
            accepted=bool(body.get("accepted")),
            message=body.get("message"),
        )

    async def get_outcome(self, item_id: str, credential: Credential) -> AuctionOutcome:
        what = f"GET outcome of {item_id}"
        body = await self._call("GET", self._url(item_id, "/outcome"), what, self._headers(credential))
        try:
            return AuctionOutcome.model_validate(body or {})
        except PydanticValidationError as e:
            raise MarketplacePermanentError(f"{what}: unexpected response {body!r}") from e
