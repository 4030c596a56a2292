"""后端集成层。

- base: BackendClient 协议。
- http_client: 基于 httpx 的实现。
"""

from chat_core.backend.base import BackendClient
from chat_core.backend.http_client import HttpBackendClient

__all__ = ["BackendClient", "HttpBackendClient"]
