"""Generic JSON API connector: GET with params/headers, map a list of records to deals."""

from __future__ import annotations

import logging
import os
import re
from typing import TYPE_CHECKING, Any, Dict, List

import aiohttp
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from dealfeed.connectors.base import BaseConnector, lookup, map_record

if TYPE_CHECKING:
    from dealfeed.storage.models import Source

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"

_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")


class JSONAPIConnector(BaseConnector):
    """Fetch deals from a JSON endpoint.

    Config keys: ``url``, ``params``, ``headers`` (``${ENV_VAR}`` expanded),
    ``items_key`` (dotted path to the record list; omit when the body is the
    list itself), and ``fields`` (raw deal key → upstream key).
    """

    def __init__(self, config: Dict[str, Any]) -> None:
        self.url = config.get("url", "")
        self.params = config.get("params") or {}
        self.headers = self._resolve_headers(config.get("headers") or {})
        self.items_key = config.get("items_key")
        self.fields = config.get("fields") or {}

    @staticmethod
    def _resolve_headers(headers: Dict[str, str]) -> Dict[str, str]:
        """Expand ${ENV_VAR} in header values; drop headers that resolve empty."""
        out: Dict[str, str] = {}
        for k, v in headers.items():
            s = _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1), ""), str(v)).strip()
            if not s or (k.lower() == "authorization" and s.lower() == "bearer"):
                continue
            out[k] = s
        out.setdefault("User-Agent", DEFAULT_USER_AGENT)
        return out

    @retry(
        retry=retry_if_exception_type((aiohttp.ClientError, OSError, ConnectionError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=60),
        reraise=True,
    )
    async def fetch(self, source: "Source") -> List[Dict[str, Any]]:
        """GET the endpoint and map its records to raw deals."""
        if not self.url:
            return []

        async with aiohttp.ClientSession() as session:
            async with session.get(self.url, params=self.params, headers=self.headers) as resp:
                if resp.status in (401, 403):
                    logger.warning(
                        "Source %s returned %s (auth/rate limit); skipping",
                        source.id, resp.status,
                    )
                    return []
                resp.raise_for_status()
                data = await resp.json(content_type=None)

        return self.normalize_response(data, source)

    def normalize_response(self, data: Any, source: "Source") -> List[Dict[str, Any]]:
        records = lookup(data, self.items_key) if self.items_key else data
        if not isinstance(records, list):
            logger.warning("Source %s: no record list at %r", source.id, self.items_key)
            return []
        return [map_record(r, self.fields) for r in records if isinstance(r, dict)]
