from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from agent.content import normalize_content
from agent.credentials import FOUNDRY_SCOPE, FoundryCredential
from agent.errors import RemoteAPIError, RunFailedError, RunTimeoutError
from config.settings import AzureSettings, Settings


logger = logging.getLogger(__name__)

API_VERSION = "2025-05-01"
IN_PROGRESS_STATUSES = frozenset({"queued", "in_progress"})
FAILED_STATUSES = frozenset({"failed", "cancelled", "expired"})


class ChatMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    role: str = Field(..., description="'user', 'assistant' or the raw upstream role")
    content: str
    created_at: Any = Field(..., alias="createdAt")


class AgentRun(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    status: Optional[str] = None
    last_error: Optional[Any] = None

    @property
    def in_progress(self) -> bool:
        return self.status in IN_PROGRESS_STATUSES


class AgentTurn(BaseModel):
    thread_id: str
    messages: List[ChatMessage]
    run: AgentRun


def to_chat_message(raw: Any) -> ChatMessage:
    item: Dict[str, Any] = raw if isinstance(raw, dict) else {}
    message_id = item.get("id")
    role = item.get("role")
    created_at = item.get("created_at")
    return ChatMessage(
        id=str(message_id) if message_id is not None else str(uuid.uuid4()),
        role=str(role) if role is not None else "assistant",
        content=normalize_content(item.get("content")),
        created_at=created_at if created_at is not None else datetime.now(timezone.utc).isoformat(),
    )


def _run_error_message(run: AgentRun) -> str:
    error = run.last_error
    if isinstance(error, dict):
        error = error.get("message") or error.get("code")
    suffix = f": {error}" if error else ""
    return f"Agent run {run.id} ended with status '{run.status}'{suffix}"


class RemoteAgentClient:
    """Drives one conversational turn against the Foundry threads/runs API.

    Each turn is a strict sequence: ensure thread, append the user message,
    start a run, poll it to a terminal status, then list the thread.
    """

    def __init__(
        self,
        settings: AzureSettings,
        credential: Any,
        http: Optional[httpx.Client] = None,
        poll_interval: float = 0.8,
        run_timeout: float = 120.0,
    ):
        self.agent_id = settings.agent_id
        self.base_url = settings.base_url
        self.credential = credential
        self.poll_interval = poll_interval
        self.run_timeout = run_timeout
        self._http = http or httpx.Client(timeout=30.0)

    def close(self) -> None:
        self._http.close()
        close_credential = getattr(self.credential, "close", None)
        if close_credential is not None:
            close_credential()

    def _headers(self) -> Dict[str, str]:
        token = self.credential.acquire_token(FOUNDRY_SCOPE)
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    def _url(self, path: str) -> str:
        separator = "" if path.startswith("/") else "/"
        query = "&" if "?" in path else "?"
        return f"{self.base_url}{separator}{path}{query}api-version={API_VERSION}"

    def _request(
        self,
        method: str,
        path: str,
        action: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        headers = self._headers()
        try:
            response = self._http.request(method, self._url(path), headers=headers, json=payload)
        except httpx.HTTPError as exc:
            raise RemoteAPIError(f"Failed to {action}: {exc}") from exc

        if response.is_error:
            detail = response.text
            raise RemoteAPIError(
                f"Failed to {action} ({response.status_code}): {detail}",
                status_code=response.status_code,
                detail=detail,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response, action: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise RemoteAPIError(
                f"Failed to {action}: response was not valid JSON",
                status_code=response.status_code,
                detail=response.text,
            ) from exc

    def _run(self, response: httpx.Response, action: str) -> AgentRun:
        try:
            return AgentRun.model_validate(self._json(response, action))
        except ValidationError as exc:
            raise RemoteAPIError(
                f"Failed to {action}: response did not describe a run",
                status_code=response.status_code,
                detail=response.text,
            ) from exc

    def ensure_thread(self, thread_id: Optional[str] = None) -> str:
        if thread_id:
            return thread_id

        response = self._request("POST", "/threads", "create thread")
        body = self._json(response, "create thread")
        new_id = body.get("id") if isinstance(body, dict) else None
        if not new_id:
            raise RemoteAPIError(
                "Thread creation response did not include an id",
                status_code=response.status_code,
                detail=response.text,
            )
        logger.info("Created thread %s", new_id)
        return str(new_id)

    def append_user_message(self, thread_id: str, content: str) -> None:
        self._request(
            "POST",
            f"/threads/{thread_id}/messages",
            "append user message",
            {"role": "user", "content": content},
        )

    def start_run(self, thread_id: str) -> AgentRun:
        response = self._request(
            "POST",
            f"/threads/{thread_id}/runs",
            "start run",
            {"assistant_id": self.agent_id},
        )
        run = self._run(response, "start run")
        logger.info("Started run %s on thread %s (status=%s)", run.id, thread_id, run.status)
        return run

    def poll_run(self, thread_id: str, run_id: str, timeout: Optional[float] = None) -> AgentRun:
        """Fetch the run until it leaves the queued/in_progress states.

        Raises ``RunTimeoutError`` once ``timeout`` seconds have elapsed.
        """
        deadline = time.monotonic() + (self.run_timeout if timeout is None else timeout)
        while time.monotonic() < deadline:
            response = self._request("GET", f"/threads/{thread_id}/runs/{run_id}", "inspect run")
            run = self._run(response, "inspect run")
            logger.debug("Run %s status=%s", run_id, run.status)
            if not run.in_progress:
                return run
            time.sleep(self.poll_interval)

        raise RunTimeoutError("Timed out while waiting for the agent response")

    def list_messages(self, thread_id: str) -> List[ChatMessage]:
        response = self._request("GET", f"/threads/{thread_id}/messages?order=asc", "fetch messages")
        payload = self._json(response, "fetch messages")
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            data = []
        return [to_chat_message(item) for item in data]

    def send_message(self, content: str, thread_id: Optional[str] = None) -> AgentTurn:
        resolved_thread_id = self.ensure_thread(thread_id)
        self.append_user_message(resolved_thread_id, content)
        run = self.start_run(resolved_thread_id)
        final_run = self.poll_run(resolved_thread_id, run.id)
        if final_run.status in FAILED_STATUSES:
            raise RunFailedError(_run_error_message(final_run), status=final_run.status)

        logger.info("Run %s finished with status %s", final_run.id, final_run.status)
        messages = self.list_messages(resolved_thread_id)
        return AgentTurn(thread_id=resolved_thread_id, messages=messages, run=final_run)


def build_client(settings: Settings) -> Optional[RemoteAgentClient]:
    azure = settings.azure
    if azure is None:
        return None

    credential = FoundryCredential(
        azure.tenant_id,
        azure.client_id,
        azure.client_secret,
        authority_host=azure.authority_host,
    )
    return RemoteAgentClient(
        azure,
        credential,
        poll_interval=settings.poll_interval,
        run_timeout=settings.run_timeout,
    )
