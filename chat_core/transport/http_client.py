"""RAG 对话服务的 HTTP 客户端。

同时实现 Transport 与 Persistence 协议：
- REST 接口统一返回 {"code": "0", "message": ..., "data": ...} 信封，
  code 不为 "0" 视为业务失败。
- 流式接口 GET /rag/v3/chat 返回 text/event-stream，
  由 transport.sse 解码为 StreamEvent。
- 认证: Authorization: <token>（原样传递，不带 Bearer 前缀）。
"""

from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from chat_core.config.settings import settings
from chat_core.domain.exceptions import ApiError, AuthExpiredError, NetworkError
from chat_core.domain.models import StreamEvent
from chat_core.transport.sse import decode_sse

SUCCESS_CODE = "0"
AUTH_EXPIRED_HINT = "未登录"


class ApiClient:
    """基于 httpx.AsyncClient 的服务端客户端实现。"""

    name = "ragent"

    def __init__(
        self,
        cfg=settings,
        *,
        token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._settings = cfg
        self._token = token
        self._transport = transport

    @property
    def token(self) -> Optional[str]:
        return self._token

    def set_token(self, token: Optional[str]) -> None:
        self._token = token

    # ---- 认证 ----

    async def login(self, username: str, password: str) -> Dict[str, Any]:
        data = await self._request("POST", "/auth/login", json={"username": username, "password": password})
        user = data or {}
        self._token = user.get("token") or None
        return user

    async def logout(self) -> None:
        try:
            await self._request("POST", "/auth/logout")
        finally:
            self._token = None

    # ---- 会话 / 消息 ----

    async def list_conversations(self) -> List[Dict[str, Any]]:
        return list(await self._request("GET", "/conversations") or [])

    async def list_messages(self, conversation_id: str) -> List[Dict[str, Any]]:
        return list(await self._request("GET", f"/conversations/{conversation_id}/messages") or [])

    async def rename_conversation(self, conversation_id: str, title: str) -> None:
        await self._request("PUT", f"/conversations/{conversation_id}", json={"title": title})

    async def delete_conversation(self, conversation_id: str) -> None:
        await self._request("DELETE", f"/conversations/{conversation_id}")

    # ---- 流式对话控制 ----

    async def submit_feedback(self, message_id: str, vote: int) -> None:
        await self._request("POST", f"/conversations/messages/{message_id}/feedback", json={"vote": vote})

    async def stop_task(self, task_id: str) -> None:
        await self._request("POST", "/rag/v3/stop", params={"taskId": task_id})

    async def open_chat_stream(
        self,
        question: str,
        conversation_id: Optional[str] = None,
        deep_thinking: bool = False,
    ) -> AsyncIterator[StreamEvent]:
        params: Dict[str, str] = {"question": question}
        if conversation_id:
            params["conversationId"] = conversation_id
        if deep_thinking:
            params["deepThinking"] = "true"
        headers = {"Accept": "text/event-stream", **self._auth_headers()}
        # 读超时交给 StreamController 的空闲策略处理
        timeout = httpx.Timeout(self._settings.http_timeout, read=None)
        try:
            async with self._client(timeout) as client:
                async with client.stream("GET", "/rag/v3/chat", params=params, headers=headers) as resp:
                    if resp.status_code >= 400 or "json" in resp.headers.get("content-type", ""):
                        await resp.aread()
                        self._unwrap(resp)
                        raise ApiError(code="API_ERROR", message="stream endpoint returned no event stream")
                    async for event in decode_sse(resp.aiter_lines()):
                        yield event
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))

    # ---- 辅助方法 ----

    def _client(self, timeout: Any = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._settings.api_base_url,
            timeout=timeout if timeout is not None else self._settings.http_timeout,
            transport=self._transport,
            trust_env=False,
        )

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": self._token} if self._token else {}

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            async with self._client() as client:
                resp = await client.request(method, path, headers=self._auth_headers(), **kwargs)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        return self._unwrap(resp)

    @staticmethod
    def _unwrap(resp: httpx.Response) -> Any:
        if resp.status_code == 401:
            raise AuthExpiredError(code="AUTH_EXPIRED", message="登录已失效", http_status=401)
        if resp.status_code >= 400:
            raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code)
        if not resp.content:
            return None
        try:
            payload = resp.json()
        except ValueError:
            raise ApiError(code="API_ERROR", message=f"invalid JSON response: {resp.text[:200]}")
        if isinstance(payload, dict) and "code" in payload:
            if str(payload.get("code")) != SUCCESS_CODE:
                message = str(payload.get("message") or "请求失败")
                if AUTH_EXPIRED_HINT in message:
                    raise AuthExpiredError(code="AUTH_EXPIRED", message=message, http_status=401)
                raise ApiError(code="API_ERROR", message=message, remote_code=payload.get("code"))
            return payload.get("data")
        return payload
