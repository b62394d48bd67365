from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from starlette.concurrency import run_in_threadpool

from agent.agent import RemoteAgentClient, build_client
from agent.errors import ConfigurationError, RelayError
from config.settings import Settings, get_settings


logger = logging.getLogger("relay")

LOG_FORMAT = "[%(asctime)s] %(levelname)s - %(message)s"
LOG_LEVEL_ALIASES = {"warn": "WARNING", "fatal": "CRITICAL", "trace": "DEBUG"}


def configure_logging(level_name: str) -> None:
    name = LOG_LEVEL_ALIASES.get(level_name.lower(), level_name.upper())
    level = logging.getLevelName(name)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)


class ChatRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    message: str = Field(..., min_length=1, description="User's latest message")
    thread_id: Optional[str] = Field(
        None,
        alias="threadId",
        min_length=1,
        description="Thread to continue; a new one is created when omitted",
    )


class InvalidPayloadError(Exception):
    """Raised when the chat body is not a valid ``ChatRequest``."""

    def __init__(self, details: Dict[str, Any]):
        super().__init__("Invalid payload")
        self.details = details


def flatten_errors(exc: ValidationError) -> Dict[str, Any]:
    form_errors: List[str] = []
    field_errors: Dict[str, List[str]] = {}
    for err in exc.errors():
        loc = err.get("loc") or ()
        if loc:
            field_errors.setdefault(str(loc[0]), []).append(err["msg"])
        else:
            form_errors.append(err["msg"])
    return {"formErrors": form_errors, "fieldErrors": field_errors}


def get_agent_client(request: Request) -> RemoteAgentClient:
    client = request.app.state.agent_client
    if client is None:
        raise ConfigurationError("Azure AI Foundry credentials are not configured.")
    return client


async def read_chat_request(request: Request) -> ChatRequest:
    # Malformed JSON and undecodable bytes both surface as ValueError.
    try:
        body = await request.json()
    except ValueError:
        raise InvalidPayloadError({"formErrors": ["Malformed JSON body"], "fieldErrors": {}})
    try:
        return ChatRequest.model_validate(body)
    except ValidationError as exc:
        raise InvalidPayloadError(flatten_errors(exc))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    client = app.state.agent_client
    close = getattr(client, "close", None)
    if close is not None:
        close()


def create_app(settings: Settings, agent_client: Optional[RemoteAgentClient] = None) -> FastAPI:
    if agent_client is None:
        agent_client = build_client(settings)

    app = FastAPI(title="Azure AI Foundry chat relay", version="1.0.0", lifespan=lifespan)
    app.state.agent_client = agent_client

    if settings.allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.allowed_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    else:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["*"],
            allow_headers=["*"],
        )

    if agent_client is None:
        logger.warning(
            "Azure AI Foundry credentials are missing. /api/chat will return 503 until configured."
        )

    @app.exception_handler(ConfigurationError)
    async def _unconfigured(_request: Request, exc: ConfigurationError) -> JSONResponse:
        logger.warning("Rejected chat request: %s", exc)
        return JSONResponse(status_code=503, content={"error": str(exc)})

    @app.exception_handler(InvalidPayloadError)
    async def _invalid_payload(_request: Request, exc: InvalidPayloadError) -> JSONResponse:
        logger.warning("Rejected chat payload: %s", exc.details)
        return JSONResponse(status_code=400, content={"error": "Invalid payload", "details": exc.details})

    @app.exception_handler(Exception)
    async def _unhandled(_request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error: %s", exc)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    @app.get("/")
    def describe(request: Request) -> Dict[str, Any]:
        return {
            "name": "Azure AI Foundry chat relay",
            "status": "ok",
            "azureConfigured": request.app.state.agent_client is not None,
            "endpoints": {
                "health": "/healthz",
                "chat": "/api/chat",
            },
        }

    @app.get("/healthz")
    def health(request: Request) -> Dict[str, Any]:
        return {"status": "ok", "azureConfigured": request.app.state.agent_client is not None}

    # The client dependency resolves first so an unconfigured relay answers 503
    # whatever the body holds.
    @app.post("/api/chat")
    async def chat(
        client: RemoteAgentClient = Depends(get_agent_client),
        req: ChatRequest = Depends(read_chat_request),
    ):
        logger.info(
            "Incoming chat: thread=%s message_len=%s",
            req.thread_id or "<new>",
            len(req.message),
        )
        try:
            turn = await run_in_threadpool(client.send_message, req.message, req.thread_id)
        except RelayError as exc:
            logger.error("Azure agent request failed: %s", exc)
            return JSONResponse(
                status_code=502,
                content={"error": "Azure agent request failed", "details": str(exc)},
            )

        logger.info(
            "Agent replied on thread %s: %s messages (run status=%s)",
            turn.thread_id,
            len(turn.messages),
            turn.run.status,
        )
        return {
            "threadId": turn.thread_id,
            "messages": [message.model_dump(by_alias=True) for message in turn.messages],
        }

    return app


settings = get_settings()
configure_logging(settings.log_level)
app = create_app(settings)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.port)
