"""Yomi Proxy — FastAPI application entry point.

A multi-provider LLM proxy: callers speak the OpenAI chat completions API,
the proxy admits them, picks a healthy upstream key, assembles the prompt
from the provider's stored structure and forwards it to the right wire
family.
"""

import asyncio
import json
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.config.settings import get_settings
from src.keys.health import check_all_credentials
from src.keys.loader import reload_providers
from src.keys.pool import UnknownProviderError, get_credential_pool
from src.logging.audit import (
    RequestTimer,
    generate_request_id,
    get_audit_logger,
    request_id_var,
    setup_logging,
)
from src.logging.requests import AUTO_PURGE, get_request_log, run_purger
from src.prompts.assembler import PromptAssembler
from src.proxy.errors import UpstreamError, UserInputError
from src.proxy.handler import close_client, forward_to_provider, open_stream, report_outcome
from src.proxy.stats import get_stats
from src.security.auth import CallerIdentity, verify_caller
from src.security.ratelimit import run_sweeper
from src.security.tokens import get_token_registry
from src.store.factory import get_record_store

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle hooks."""
    setup_logging()
    settings = get_settings()
    logger = get_audit_logger()

    registry = get_token_registry()
    await registry.load()

    pool = get_credential_pool()
    await reload_providers(pool, get_record_store(), settings)

    request_log = get_request_log()
    tasks = [
        asyncio.create_task(check_all_credentials(pool)),
        asyncio.create_task(run_sweeper(registry.limiter, settings.sweep_interval_seconds)),
    ]
    if request_log.mode == AUTO_PURGE:
        tasks.append(asyncio.create_task(run_purger(request_log)))

    logger.info("Proxy started", extra={"audit_data": {
        "version": VERSION,
        "security_mode": settings.security_mode,
        "providers": pool.provider_ids(),
        "request_log_mode": request_log.mode,
    }})
    yield

    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    await request_log.drain()
    await close_client()
    logger.info("Proxy stopped")


app = FastAPI(
    title="Yomi Proxy",
    description="Multi-provider LLM proxy with prompt structures and key rotation",
    version=VERSION,
    lifespan=lifespan,
)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.get("/health")
async def health():
    return {"status": "healthy", "version": VERSION}


@app.get("/providers")
async def providers():
    summary = get_credential_pool().provider_summary()
    return {"providers": list(summary.values())}


@app.get("/stats")
async def stats():
    return get_stats().snapshot()


def _not_found(provider_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content={"error": f"Provider '{provider_id}' not found or is not enabled."},
    )


def _failure_response(exc: Exception, provider_id: str, credential_value: str, rid: str) -> JSONResponse:
    """Map a dispatch failure onto the caller's response, updating key health for upstream errors."""
    logger = get_audit_logger()
    request_log = get_request_log()

    if isinstance(exc, UserInputError):
        content = {"error": "Invalid request", "detail": exc.message}
        request_log.end(rid, 400, content)
        return JSONResponse(status_code=400, content=content)

    if isinstance(exc, UpstreamError):
        report_outcome(get_credential_pool(), provider_id, credential_value, exc.status_code)
        logger.warning("Upstream returned an error", extra={"audit_data": {
            "provider": provider_id, "upstream_status": exc.status_code,
        }})
        request_log.end(rid, exc.status_code, exc.body)
        return JSONResponse(status_code=exc.status_code, content=exc.body)

    if isinstance(exc, HTTPException):
        logger.warning("Upstream transport failure", extra={"audit_data": {
            "provider": provider_id, "status": exc.status_code, "detail": exc.detail,
        }})
        content = {"error": exc.detail}
        request_log.end(rid, exc.status_code, content)
        return JSONResponse(status_code=exc.status_code, content=content)

    logger.error("Unexpected error while proxying request", exc_info=exc, extra={"audit_data": {
        "provider": provider_id,
    }})
    content = {"error": "Internal server error."}
    request_log.end(rid, 500, content)
    return JSONResponse(status_code=500, content=content)


@app.post("/{provider_id}/v1/chat/completions")
async def chat_completions(
    provider_id: str, request: Request, caller: CallerIdentity = Depends(verify_caller)
):
    """Proxy endpoint mirroring the OpenAI chat completions API.

    Pipeline: Admit -> Select credential -> Assemble -> Dispatch -> Report outcome
    """
    logger = get_audit_logger()
    rid = generate_request_id()
    request_id_var.set(rid)

    pool = get_credential_pool()
    config = pool.get_config(provider_id)
    if config is None:
        return _not_found(provider_id)

    try:
        body = await request.json()
    except ValueError:
        return JSONResponse(status_code=400, content={"error": "Request body must be valid JSON."})
    if not isinstance(body, dict) or not isinstance(body.get("messages"), list):
        return JSONResponse(
            status_code=400, content={"error": "Request body must include a 'messages' array."}
        )

    stats = get_stats()
    stats.increment_prompt_count()
    request_log = get_request_log()

    # 1. Credential selection (cheap failure before any assembly work)
    try:
        credential = pool.select_credential(provider_id)
    except UnknownProviderError:
        return _not_found(provider_id)

    if credential is None:
        logger.warning("No active credential", extra={"audit_data": {
            "provider": provider_id, "caller": caller.name,
        }})
        content = {"error": f"No active API keys available for provider '{provider_id}'."}
        request_log.begin(rid, provider_id, caller.name, body)
        request_log.end(rid, 503, content)
        return JSONResponse(status_code=503, content=content)

    # 2. Prompt assembly
    try:
        assembled = await PromptAssembler(get_record_store()).assemble(provider_id, body["messages"])
    except UserInputError as e:
        logger.info("Rejected command usage", extra={"audit_data": {
            "provider": provider_id, "caller": caller.name, "detail": e.message,
        }})
        return JSONResponse(
            status_code=400, content={"error": "Invalid command usage", "detail": e.message}
        )
    except Exception as e:
        return _failure_response(e, provider_id, credential.value, rid)

    request_log.begin(
        rid, provider_id, caller.name, body, assembled.character_name, assembled.command_tags
    )

    if body.get("stream", False):
        return await _handle_streaming(assembled.messages, body, credential, config, caller, rid)

    # 3. Dispatch
    try:
        with RequestTimer() as timer:
            result = await forward_to_provider(assembled.messages, body, credential, config)
    except Exception as e:
        return _failure_response(e, provider_id, credential.value, rid)

    report_outcome(pool, provider_id, credential.value, result.status_code)
    stats.add_tokens(result.prompt_tokens, result.completion_tokens)
    request_log.end(rid, result.status_code, result.body)

    logger.info("Request proxied", extra={"audit_data": {
        "provider": provider_id,
        "caller": caller.name,
        "model": result.body.get("model", body.get("model", "unknown")),
        "character": assembled.character_name,
        "commands": sorted(assembled.command_tags),
        "summary_request": assembled.is_summary,
        "upstream_status": result.status_code,
        "latency_ms": timer.elapsed_ms,
        "prompt_tokens": result.prompt_tokens,
        "completion_tokens": result.completion_tokens,
    }})

    return JSONResponse(
        status_code=result.status_code,
        content=result.body,
        headers={"X-Request-Id": rid},
    )


async def _handle_streaming(messages, body, credential, config, caller, rid):
    """Handle streaming requests. The first chunk is pulled before headers go out."""
    provider_id = config.provider_id
    try:
        first, stream = await open_stream(messages, body, credential, config)
    except Exception as e:
        return _failure_response(e, provider_id, credential.value, rid)

    logger = get_audit_logger()
    pool = get_credential_pool()
    request_log = get_request_log()

    async def event_generator():
        accumulated_text = []
        chunk = first
        finished = False
        try:
            while chunk is not None:
                if chunk.text_delta:
                    accumulated_text.append(chunk.text_delta)
                if chunk.is_done:
                    break
                yield f"data: {chunk.data}\n\n"
                chunk = await anext(stream, None)
            finished = True

        except Exception as e:
            finished = True
            status = e.status_code if isinstance(e, (HTTPException, UpstreamError)) else 500
            detail = e.detail if isinstance(e, HTTPException) else str(e)
            logger.error("Stream interrupted", exc_info=e, extra={"audit_data": {
                "provider": provider_id, "caller": caller.name,
            }})
            request_log.end(rid, status, {"error": detail})
            yield f"data: {json.dumps({'error': detail})}\n\n"
            return
        finally:
            if not finished:
                # Body iterator closed early: the caller went away
                logger.warning("Client disconnected mid-stream", extra={"audit_data": {
                    "provider": provider_id, "caller": caller.name,
                }})
                request_log.end(rid, 499, {"error": "client disconnected"})
            await stream.aclose()

        report_outcome(pool, provider_id, credential.value, 200)
        request_log.end(rid, 200, {"content": "".join(accumulated_text)})
        logger.info("Stream completed", extra={"audit_data": {
            "provider": provider_id,
            "caller": caller.name,
            "stream": True,
            "response_chars": sum(len(t) for t in accumulated_text),
        }})
        yield "data: [DONE]\n\n"

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "X-Request-Id": rid,
            "Cache-Control": "no-cache",
        },
    )
