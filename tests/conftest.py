from __future__ import annotations

import itertools
import json
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest

from agent.agent import RemoteAgentClient
from config.settings import AzureSettings


PROJECT_PREFIX = "/api/projects/demo"


class StaticCredential:
    def __init__(self, token: str = "test-token"):
        self.token = token
        self.scopes: List[str] = []

    def acquire_token(self, scope: str) -> str:
        self.scopes.append(scope)
        return self.token


class FakeFoundry:
    """In-memory stand-in for the Foundry threads/runs API."""

    def __init__(self):
        self.threads: Dict[str, List[Dict[str, Any]]] = {}
        self.runs: Dict[str, Dict[str, Any]] = {}
        self.requests: List[httpx.Request] = []
        self.run_statuses: List[str] = ["queued", "in_progress", "completed"]
        self.last_error: Optional[Dict[str, Any]] = None
        self.reply = "Hello from the agent"
        self.failures: Dict[str, Tuple[int, str]] = {}
        self.overrides: Dict[str, Any] = {}
        self._ids = itertools.count(1)

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids)}"

    def _route(self, request: httpx.Request) -> Tuple[str, List[str]]:
        parts = request.url.path[len(PROJECT_PREFIX):].strip("/").split("/")
        if request.method == "POST" and parts == ["threads"]:
            return "create_thread", parts
        if request.method == "POST" and len(parts) == 3 and parts[2] == "messages":
            return "append", parts
        if request.method == "POST" and len(parts) == 3 and parts[2] == "runs":
            return "start", parts
        if request.method == "GET" and len(parts) == 4 and parts[2] == "runs":
            return "poll", parts
        if request.method == "GET" and len(parts) == 3 and parts[2] == "messages":
            return "list", parts
        return "unknown", parts

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route, parts = self._route(request)
        if route in self.failures:
            status, body = self.failures[route]
            return httpx.Response(status, text=body)
        if route in self.overrides:
            return httpx.Response(200, json=self.overrides[route])

        if route == "create_thread":
            thread_id = self._next_id("thread")
            self.threads[thread_id] = []
            return httpx.Response(200, json={"id": thread_id, "object": "thread"})

        thread_id = parts[1] if len(parts) > 1 else ""
        if thread_id not in self.threads:
            return httpx.Response(404, json={"error": {"message": f"No thread found with id '{thread_id}'"}})

        if route == "append":
            body = json.loads(request.content)
            message = {
                "id": self._next_id("msg"),
                "role": body["role"],
                "content": [{"type": "text", "text": body["content"]}],
                "created_at": 1700000000 + len(self.threads[thread_id]),
            }
            self.threads[thread_id].append(message)
            return httpx.Response(200, json=message)

        if route == "start":
            run_id = self._next_id("run")
            self.runs[run_id] = {"thread_id": thread_id, "statuses": iter(self.run_statuses)}
            return httpx.Response(200, json={"id": run_id, "status": "queued"})

        if route == "poll":
            run = self.runs[parts[3]]
            status = next(run["statuses"], self.run_statuses[-1])
            if status == "completed" and not run.get("replied"):
                run["replied"] = True
                self.threads[thread_id].append(
                    {
                        "id": self._next_id("msg"),
                        "role": "assistant",
                        "content": [{"type": "text", "text": self.reply}],
                        "created_at": 1700000000 + len(self.threads[thread_id]),
                    }
                )
            payload: Dict[str, Any] = {"id": parts[3], "status": status}
            if status == "failed" and self.last_error:
                payload["last_error"] = self.last_error
            return httpx.Response(200, json=payload)

        if route == "list":
            return httpx.Response(200, json={"object": "list", "data": list(self.threads[thread_id])})

        return httpx.Response(404, text="not found")

    def routes(self) -> List[str]:
        return [self._route(request)[0] for request in self.requests]


@pytest.fixture
def azure_settings() -> AzureSettings:
    return AzureSettings(
        endpoint="https://foundry.example.com",
        project="demo",
        agent_id="asst_123",
        tenant_id="tenant-1",
        client_id="client-1",
        client_secret="secret-1",
    )


@pytest.fixture
def credential() -> StaticCredential:
    return StaticCredential()


@pytest.fixture
def foundry() -> FakeFoundry:
    return FakeFoundry()


@pytest.fixture
def make_client(azure_settings, credential, foundry):
    def _make(**kwargs) -> RemoteAgentClient:
        kwargs.setdefault("poll_interval", 0)
        kwargs.setdefault("run_timeout", 5.0)
        http = httpx.Client(transport=httpx.MockTransport(foundry.handler))
        return RemoteAgentClient(azure_settings, credential, http=http, **kwargs)

    return _make
