"""Deal connectors.

Supported types: json_api (HTTP JSON endpoint), file (local JSON list).
"""

from dealfeed.connectors.api import JSONAPIConnector
from dealfeed.connectors.base import BaseConnector
from dealfeed.connectors.factory import build_connector
from dealfeed.connectors.file import FileConnector

__all__ = [
    "BaseConnector",
    "build_connector",
    "JSONAPIConnector",
    "FileConnector",
]
