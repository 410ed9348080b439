import asyncio
import json
import os
import shutil
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.security import APIKeyHeader
from starlette.responses import StreamingResponse

from . import constants
from . import state
from .browser_utils import cancel_background_task
from .config import get_config, get_seconds, get_user_data_dir, save_config
from .console import debug_print, preview, safe_print
from .driver import ConversationDriver
from .emitter import (
    CompletionCollector,
    StreamEmitter,
    coerce_message_content_to_text,
    extract_conversation_id_from_messages,
    sse_error,
)
from .errors import (
    BridgeError,
    ExchangeTimeout,
    LoginFlowError,
    LoginRequired,
    SessionUnavailable,
    UpstreamUnrecoverable,
)
from .identity import Identity, IdentityStore
from .login import DEFAULT_CONVERSATION, LoginManager, LoginMethod, LoginStore, fetch_qr_image_base64
from .providers import PROVIDERS, get_adapter, resolve_model
from .session_pool import AutomationEngine, SessionPool

PORT = constants.PORT
API_KEY_HEADER = APIKeyHeader(name="Authorization", auto_error=False)

# How often a running exchange checks whether its client went away.
DISCONNECT_CHECK_INTERVAL_SECONDS = 0.5


# --- Services ---

def init_services(config: dict, *, engine=None) -> None:
    """Build the shared services from config. The engine is not started here."""
    user_data_dir = get_user_data_dir(config)
    state.engine = engine or AutomationEngine()
    state.identities = IdentityStore(user_data_dir)
    state.identities.load()
    state.pool = SessionPool(
        state.engine,
        state.identities,
        user_data_dir=user_data_dir,
        default_headless=bool(config.get("browser_headless", False)),
        attempts=int(config.get("session_acquire_attempts") or constants.DEFAULT_SESSION_ACQUIRE_ATTEMPTS),
        launch_timeout=get_seconds(config, "session_launch_timeout_seconds",
                                   constants.DEFAULT_SESSION_LAUNCH_TIMEOUT_SECONDS, minimum=5.0),
        engine_init_timeout=get_seconds(config, "engine_init_timeout_seconds",
                                        constants.DEFAULT_ENGINE_INIT_TIMEOUT_SECONDS, minimum=1.0),
    )
    state.login_store = LoginStore(user_data_dir)
    state.login_manager = LoginManager(state.pool, state.identities, state.login_store)
    state.driver = ConversationDriver(state.pool)


async def _start_engine() -> None:
    try:
        await state.engine.start()
    except Exception as e:
        debug_print(f"❌ Automation engine startup failed: {e}")


async def startup_event():
    # Prevent unit tests (ASGITransport) from clobbering the user's real config.json
    # and launching a browser runtime.
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return

    config = get_config()
    if not config.get("api_keys"):
        config["api_keys"] = [
            {
                "name": "Default Key",
                "key": f"sk-wcb-{uuid.uuid4()}",
                "rpm": constants.DEFAULT_RATE_LIMIT_RPM,
                "created": int(time.time()),
            }
        ]
    save_config(config)

    init_services(config)
    removed = state.pool.sweep_orphans()
    if removed:
        debug_print(f"🧹 Removed {len(removed)} orphaned profile director{'y' if len(removed) == 1 else 'ies'}")

    # Requests wait (bounded) on the engine instead of the server waiting at boot.
    state.engine_task = asyncio.create_task(_start_engine())
    debug_print("✅ Startup complete; automation engine is starting in the background")


async def shutdown_event():
    if state.engine_task is not None:
        await cancel_background_task(state.engine_task)
    if state.login_manager is not None:
        await state.login_manager.close()
    if state.pool is not None:
        await state.pool.shutdown()


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        await startup_event()
    except Exception as e:
        debug_print(f"❌ Error during startup: {e}")
    yield
    try:
        await shutdown_event()
    except Exception as e:
        debug_print(f"❌ Error during shutdown: {e}")


app = FastAPI(lifespan=lifespan)


def _services():
    if state.pool is None or state.driver is None:
        raise HTTPException(status_code=503, detail="Bridge services are not initialized.")
    return state


def _http_error(exc: BaseException) -> HTTPException:
    if isinstance(exc, LoginRequired):
        return HTTPException(status_code=401, detail=f"Login required: {exc}")
    if isinstance(exc, SessionUnavailable):
        return HTTPException(status_code=503, detail=f"Session unavailable: {exc}")
    if isinstance(exc, UpstreamUnrecoverable):
        return HTTPException(status_code=502, detail=f"Upstream error: {exc}")
    if isinstance(exc, ExchangeTimeout):
        return HTTPException(status_code=504, detail=f"Timed out: {exc}")
    if isinstance(exc, LoginFlowError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, KeyError):
        return HTTPException(status_code=404, detail=str(exc.args[0]) if exc.args else "Not found")
    return HTTPException(status_code=500, detail=f"Internal server error: {exc}")


def _stream_error_payload(exc: BaseException) -> list[str]:
    if isinstance(exc, ExchangeTimeout):
        return sse_error(f"Timed out: {exc}", "timeout", 504)
    if isinstance(exc, UpstreamUnrecoverable):
        return sse_error(f"Upstream error: {exc}", "upstream_error", 502)
    if isinstance(exc, SessionUnavailable):
        return sse_error(f"Session unavailable: {exc}", "session_unavailable", 503)
    if isinstance(exc, LoginRequired):
        return sse_error(f"Login required: {exc}", "login_required", 401)
    return sse_error(f"Internal server error: {exc}", "internal_error", 500)


async def _read_json_body(request: Request, *, optional: bool = False) -> dict:
    if optional and not (await request.body()).strip():
        return {}
    try:
        body = await request.json()
    except json.JSONDecodeError as e:
        debug_print(f"❌ Invalid JSON in request body: {e}")
        raise HTTPException(status_code=400, detail=f"Invalid JSON in request body: {str(e)}")
    except Exception as e:
        debug_print(f"❌ Failed to read request body: {e}")
        raise HTTPException(status_code=400, detail=f"Failed to read request body: {str(e)}")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object.")
    return body


def _optional_bool(value, field_name: str) -> Optional[bool]:
    if value is None or isinstance(value, bool):
        return value
    raise HTTPException(status_code=400, detail=f"'{field_name}' must be a boolean or null.")


def _identity_for(provider: str, account_id: str) -> Identity:
    if provider not in PROVIDERS:
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}")
    return Identity(provider, account_id)


def _pick_identity(provider: str, account_id: Optional[str]) -> Identity:
    """Explicit account if given, otherwise the most recently used verified account of the provider."""
    if account_id:
        return Identity(provider, str(account_id))
    verified = [r for r in state.identities.list(provider) if r.login_verified]
    if not verified:
        raise LoginRequired(f"{provider}:*")
    verified.sort(key=lambda r: r.last_used_at or r.created_at, reverse=True)
    return verified[0].identity


def _build_prompt(messages: list, resuming: bool) -> str:
    user_messages = [m for m in messages if isinstance(m, dict) and m.get("role") == "user"]
    if not user_messages:
        raise HTTPException(status_code=400, detail="At least one 'user' message is required.")
    prompt = coerce_message_content_to_text(user_messages[-1].get("content", "")).strip()
    if not prompt:
        raise HTTPException(status_code=400, detail="Last user message is empty.")
    # The upstream conversation already holds the system prompt once it exists.
    if not resuming:
        system_messages = [m for m in messages if isinstance(m, dict) and m.get("role") == "system"]
        if system_messages:
            system_prompt = "\n\n".join(coerce_message_content_to_text(m.get("content", "")) for m in system_messages)
            prompt = f"{system_prompt}\n\n{prompt}"
    return prompt


async def _watch_disconnect(request: Request, cancelled: dict) -> None:
    while not cancelled["value"]:
        if await request.is_disconnected():
            debug_print("🔌 Client disconnected; stopping exchange")
            cancelled["value"] = True
            return
        await asyncio.sleep(DISCONNECT_CHECK_INTERVAL_SECONDS)


# --- API key auth ---

async def rate_limit_api_key(key: str = Depends(API_KEY_HEADER)):
    config = get_config()
    api_keys = config.get("api_keys", [])

    api_key_str = None
    if key and key.startswith("Bearer "):
        api_key_str = key[7:].strip()

    # If no API keys configured, allow anonymous access (optional auth)
    if not api_keys:
        return {"key": "anonymous", "name": "Anonymous", "rpm": 9999}

    # If keys are configured but none provided, use first available key
    if not api_key_str:
        api_key_str = api_keys[0]["key"]

    key_data = next((k for k in api_keys if k["key"] == api_key_str), None)
    if not key_data:
        raise HTTPException(status_code=401, detail="Invalid API Key.")

    rate_limit = key_data.get("rpm", constants.DEFAULT_RATE_LIMIT_RPM)
    window = constants.RATE_LIMIT_WINDOW_SECONDS
    current_time = time.time()

    state.api_key_usage[api_key_str] = [t for t in state.api_key_usage[api_key_str] if current_time - t < window]

    if len(state.api_key_usage[api_key_str]) >= rate_limit:
        oldest_timestamp = min(state.api_key_usage[api_key_str])
        retry_after = max(1, int(window - (current_time - oldest_timestamp)))
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded. Please try again later.",
            headers={"Retry-After": str(retry_after)}
        )

    state.api_key_usage[api_key_str].append(current_time)
    return key_data


# --- Health & models ---

@app.get("/api/v1/health")
async def health_check():
    """Health check endpoint for monitoring"""
    try:
        config = get_config()
        engine_ready = bool(state.engine is not None and getattr(state.engine, "is_running", False))
        records = state.identities.list() if state.identities is not None else []
        verified = [r for r in records if r.login_verified]
        live_sessions = 0
        if state.pool is not None:
            live_sessions = sum(1 for r in records if state.pool.get_live(r.identity) is not None)

        status = "healthy" if (engine_ready and verified) else "degraded"

        return {
            "status": status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": {
                "engine_ready": engine_ready,
                "accounts": len(records),
                "verified_accounts": len(verified),
                "live_sessions": live_sessions,
                "api_keys_configured": len(config.get("api_keys", [])) > 0,
            }
        }
    except Exception as e:
        return {
            "status": "unhealthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "error": str(e)
        }


@app.get("/api/v1/models")
async def list_models(api_key: dict = Depends(rate_limit_api_key)):
    created = int(time.time())
    return {
        "object": "list",
        "data": [
            {
                "id": name,
                "object": "model",
                "created": created,
                "owned_by": constants.MODEL_OWNERS.get(provider, provider),
            }
            for name, (provider, _want_reasoning) in constants.MODEL_TABLE.items()
        ]
    }


# --- Chat completions ---

@app.post("/api/v1/chat/completions")
async def api_chat_completions(request: Request, api_key: dict = Depends(rate_limit_api_key)):
    services = _services()
    body = await _read_json_body(request)

    model_public_name = body.get("model")
    messages = body.get("messages", [])
    stream = bool(body.get("stream", False))

    if not model_public_name:
        raise HTTPException(status_code=400, detail="Missing 'model' in request body.")
    if not isinstance(messages, list) or not messages:
        raise HTTPException(status_code=400, detail="'messages' must be a non-empty array.")

    try:
        adapter, want_reasoning = resolve_model(model_public_name)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Model '{model_public_name}' not found.")

    headless = _optional_bool(body.get("headless"), "headless")
    conversation_id = body.get("conversation_id") or extract_conversation_id_from_messages(messages)
    prompt = _build_prompt(messages, resuming=bool(conversation_id))

    try:
        identity = _pick_identity(adapter.name, body.get("account_id"))
    except LoginRequired as e:
        raise _http_error(e)

    debug_print(
        f"🔵 Chat request: model={model_public_name} identity={identity.key} "
        f"conversation={conversation_id or 'new'} stream={stream} prompt={preview(prompt)}"
    )

    cancelled = {"value": False}
    watcher = asyncio.create_task(_watch_disconnect(request, cancelled))
    events = services.driver.exchange(
        identity,
        conversation_id,
        prompt,
        want_reasoning,
        headless=headless,
        is_cancelled=lambda: cancelled["value"],
    )

    # The first event is awaited before responding so that submit failures keep their HTTP status.
    try:
        first_event = await events.__anext__()
    except StopAsyncIteration:
        first_event = None
    except (BridgeError, KeyError) as e:
        await cancel_background_task(watcher)
        debug_print(f"❌ Exchange failed before any output: {type(e).__name__}: {e}")
        raise _http_error(e)
    except BaseException:
        await cancel_background_task(watcher)
        await events.aclose()
        raise

    if not stream:
        collector = CompletionCollector(model_public_name)
        try:
            if first_event is not None:
                collector.feed(first_event)
                async for event in events:
                    collector.feed(event)
        except BridgeError as e:
            debug_print(f"❌ Exchange failed: {type(e).__name__}: {e}")
            raise _http_error(e)
        finally:
            await cancel_background_task(watcher)
            await events.aclose()
        return collector.build(prompt)

    async def generate_stream():
        emitter = StreamEmitter(model_public_name)
        try:
            for chunk in emitter.start():
                yield chunk
            if first_event is None:
                return
            for chunk in emitter.render(first_event):
                yield chunk
            async for event in events:
                for chunk in emitter.render(event):
                    yield chunk
        except Exception as e:
            debug_print(f"❌ Stream failed after {len(emitter.response_text)} chars: {type(e).__name__}: {e}")
            for chunk in _stream_error_payload(e):
                yield chunk
        finally:
            await cancel_background_task(watcher)
            await events.aclose()

    return StreamingResponse(generate_stream(), media_type="text/event-stream")


# --- Accounts ---

@app.get("/api/v1/accounts")
async def list_accounts(provider: Optional[str] = None, api_key: dict = Depends(rate_limit_api_key)):
    services = _services()
    if provider is not None and provider not in PROVIDERS:
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}")
    records = services.identities.list(provider)
    return {
        "object": "list",
        "data": [
            {**r.to_public_dict(), "live": services.pool.get_live(r.identity) is not None}
            for r in records
        ]
    }


@app.post("/api/v1/accounts")
async def create_account(request: Request, api_key: dict = Depends(rate_limit_api_key)):
    services = _services()
    body = await _read_json_body(request)
    provider = body.get("provider")
    if provider not in PROVIDERS:
        raise HTTPException(status_code=400, detail=f"'provider' must be one of: {', '.join(PROVIDERS)}")
    record = services.identities.create(
        provider,
        str(body.get("account_label") or ""),
        nickname=str(body.get("nickname") or ""),
        headless_preference=_optional_bool(body.get("headless"), "headless"),
    )
    return record.to_public_dict()


@app.delete("/api/v1/accounts/{provider}/{account_id}")
async def delete_account(provider: str, account_id: str, api_key: dict = Depends(rate_limit_api_key)):
    services = _services()
    identity = _identity_for(provider, account_id)
    if services.identities.get(identity) is None:
        raise HTTPException(status_code=404, detail=f"Unknown account: {identity.key}")
    await services.pool.evict(identity, "account deleted")
    services.identities.delete(identity)
    services.login_store.delete_identity(identity)
    profile = services.pool.profile_dir(identity)
    if profile.is_dir():
        try:
            shutil.rmtree(profile)
        except OSError as e:
            debug_print(f"⚠️  Could not remove profile {profile}: {e}")
    return {"deleted": identity.key}


@app.put("/api/v1/accounts/{provider}/{account_id}/headless")
async def set_account_headless(provider: str, account_id: str, request: Request,
                               api_key: dict = Depends(rate_limit_api_key)):
    services = _services()
    identity = _identity_for(provider, account_id)
    body = await _read_json_body(request)
    try:
        record = services.identities.set_headless_preference(identity, _optional_bool(body.get("headless"), "headless"))
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown account: {identity.key}")
    return record.to_public_dict()


# --- Login ---

def _conversation_from(body: dict) -> str:
    return str(body.get("conversation") or DEFAULT_CONVERSATION)


async def _login_call(coro):
    try:
        return await coro
    except (BridgeError, KeyError) as e:
        raise _http_error(e)


@app.get("/api/v1/login/{provider}/{account_id}")
async def login_status(provider: str, account_id: str, conversation: str = DEFAULT_CONVERSATION,
                       api_key: dict = Depends(rate_limit_api_key)):
    services = _services()
    identity = _identity_for(provider, account_id)
    record = services.login_manager.get(identity, conversation)
    return {
        "identity": identity.key,
        "verified": services.identities.is_verified(identity),
        "login_methods": list(get_adapter(provider).login_methods),
        "session": record.to_dict() if record is not None else None,
    }


@app.post("/api/v1/login/{provider}/{account_id}/start")
async def login_start(provider: str, account_id: str, request: Request,
                      api_key: dict = Depends(rate_limit_api_key)):
    services = _services()
    identity = _identity_for(provider, account_id)
    body = await _read_json_body(request, optional=True)
    record = await _login_call(services.login_manager.start_login(identity, _conversation_from(body)))
    return record.to_dict()


@app.post("/api/v1/login/{provider}/{account_id}/method")
async def login_method(provider: str, account_id: str, request: Request,
                       api_key: dict = Depends(rate_limit_api_key)):
    services = _services()
    identity = _identity_for(provider, account_id)
    body = await _read_json_body(request)
    method = body.get("method")
    if method not in {m.value for m in LoginMethod}:
        raise HTTPException(status_code=400, detail=f"'method' must be one of: {', '.join(m.value for m in LoginMethod)}")
    record = await _login_call(
        services.login_manager.choose_method(identity, LoginMethod(method), _conversation_from(body))
    )
    return record.to_dict()


@app.post("/api/v1/login/{provider}/{account_id}/account")
async def login_account(provider: str, account_id: str, request: Request,
                        api_key: dict = Depends(rate_limit_api_key)):
    services = _services()
    identity = _identity_for(provider, account_id)
    body = await _read_json_body(request)
    record = await _login_call(
        services.login_manager.submit_account(identity, str(body.get("account") or ""), _conversation_from(body))
    )
    return record.to_dict()


@app.post("/api/v1/login/{provider}/{account_id}/password")
async def login_password(provider: str, account_id: str, request: Request,
                         api_key: dict = Depends(rate_limit_api_key)):
    services = _services()
    identity = _identity_for(provider, account_id)
    body = await _read_json_body(request)
    record = await _login_call(
        services.login_manager.submit_password(identity, str(body.get("password") or ""), _conversation_from(body))
    )
    return record.to_dict()


@app.post("/api/v1/login/{provider}/{account_id}/confirm-scan")
async def login_confirm_scan(provider: str, account_id: str, request: Request,
                             api_key: dict = Depends(rate_limit_api_key)):
    services = _services()
    identity = _identity_for(provider, account_id)
    body = await _read_json_body(request, optional=True)
    record = await _login_call(services.login_manager.confirm_scan(identity, _conversation_from(body)))
    return record.to_dict()


@app.post("/api/v1/login/{provider}/{account_id}/verify")
async def login_verify(provider: str, account_id: str, request: Request,
                       api_key: dict = Depends(rate_limit_api_key)):
    services = _services()
    identity = _identity_for(provider, account_id)
    body = await _read_json_body(request, optional=True)
    result = await _login_call(services.login_manager.verify(identity, body.get("conversation")))
    return {
        "identity": identity.key,
        "verified": result.verified,
        "expected": result.expected,
        "actual": result.actual,
        "adopted": result.adopted,
    }


@app.get("/api/v1/login/{provider}/{account_id}/qrcode")
async def login_qrcode(provider: str, account_id: str, conversation: str = DEFAULT_CONVERSATION,
                       api_key: dict = Depends(rate_limit_api_key)):
    services = _services()
    identity = _identity_for(provider, account_id)
    record = services.login_manager.get(identity, conversation)
    if record is None or not record.qr_code_url:
        raise HTTPException(status_code=404, detail="No QR code for this login session.")
    if record.qr_code_url.startswith("data:"):
        return {"image": record.qr_code_url}
    try:
        image = await fetch_qr_image_base64(record.qr_code_url)
    except Exception as e:
        debug_print(f"❌ QR code download failed: {e}")
        raise HTTPException(status_code=502, detail=f"Could not fetch QR code: {e}")
    return {"image": image}


if __name__ == "__main__":
    safe_print("=" * 60)
    safe_print("🚀 WebChatBridge Server Starting...")
    safe_print("=" * 60)
    safe_print(f"📚 API Base URL: http://localhost:{PORT}/api/v1")
    safe_print(f"🤖 Models: {', '.join(constants.MODEL_TABLE)}")
    safe_print("=" * 60)
    uvicorn.run(app, host="0.0.0.0", port=PORT)
