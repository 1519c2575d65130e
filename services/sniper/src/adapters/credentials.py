"""
Marketplace credentials from the external token store.

    GET  /users/{user_id}/marketplace-token          -> {access_token, expires_at}
    POST /users/{user_id}/marketplace-token/refresh  -> {access_token, expires_at}

A token that expires within the refresh margin is refreshed before use.
"""

from datetime import datetime, timedelta
from typing import Callable
from urllib.parse import quote

from pydantic import ValidationError as PydanticValidationError

from clients import http
from clients.http import HttpError, HttpStatusError
from conf import TokenStoreConf
from engine.errors import CredentialError
from engine.ports import Credential, utc_now
from engine.validation import as_utc
from utils import log

from .marketplace import translate_http_error

logger = log.get_logger(__name__)


class TokenStoreCredentialProvider:
    def __init__(self, conf: TokenStoreConf, clock: Callable[[], datetime] = utc_now):
        self.conf = conf
        self._clock = clock

    def _url(self, user_id: str, suffix: str = "") -> str:
        return f"{self.conf.base_url}/users/{quote(user_id, safe='')}/marketplace-token{suffix}"

    async def _fetch(self, method: str, user_id: str, suffix: str = "") -> Credential:
        what = f"{method} token for user {user_id}"
        try:
            body = await http.request(method, self._url(user_id, suffix), timeout=self.conf.timeout_seconds)
        except HttpStatusError as e:
            if e.status in (401, 404):
                raise CredentialError(f"No marketplace credential for user {user_id}") from e
            raise translate_http_error(e, what) from e
        except HttpError as e:
            raise translate_http_error(e, what) from e
        try:
            return Credential.model_validate({"user_id": user_id, **(body or {})})
        except PydanticValidationError as e:
            raise CredentialError(f"{what}: malformed token response") from e

    def _expiring(self, credential: Credential) -> bool:
        if credential.expires_at is None:
            return False
        margin = timedelta(seconds=self.conf.refresh_margin_seconds)
        return as_utc(credential.expires_at) - self._clock() <= margin

    async def get_valid_credential(self, user_id: str) -> Credential:
        credential = await self._fetch("GET", user_id)
        if not self._expiring(credential):
            return credential

        logger.info(f"Marketplace token for user {user_id} expires soon; refreshing")
        credential = await self._fetch("POST", user_id, "/refresh")
        if self._expiring(credential):
            raise CredentialError(f"Refreshed token for user {user_id} is still expiring")
        return credential
