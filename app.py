from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from typing import Any, Dict, List, Optional
import datetime
import os
import uuid
import logging

import requests

from ai_client import ModelClient
from bundle import IR, MAX_BYTES, MAX_FILES, apply_guardrails, slugify, short_id
from cloudflare_ops import CloudflareOps, DEPLOY_MODES, deploy_bundle
from config import env_int, env_presence
from errors import InvalidRequestError, OrchestratorError, UpstreamError
from github_ops import GitHubOps
from pipeline import GenerationContext, run_generation
from readiness import BackoffPolicy

logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger("sandbox-orchestrator")

app = FastAPI(title="sandbox-orchestrator")


class ChatMsg(BaseModel):
    role: str = "user"
    content: str = ""


class MvpRequest(BaseModel):
    idea: Optional[str] = None
    ideaId: Optional[str] = None
    thread: Optional[List[ChatMsg]] = None


class SandboxDeployRequest(BaseModel):
    confirm: bool = False
    mode: Optional[str] = None
    name: Optional[str] = None
    files: Optional[Dict[str, Any]] = None
    # used to regenerate a bundle when no files are sent
    idea: Optional[str] = None
    ideaId: Optional[str] = None
    thread: Optional[List[ChatMsg]] = None


class GitHubExportRequest(BaseModel):
    repoName: Optional[str] = None
    private: bool = True
    files: Dict[str, Any] = {}


def _limits() -> Dict[str, int]:
    return {"max_files": env_int("MAX_FILES", MAX_FILES), "max_bytes": env_int("MAX_BYTES", MAX_BYTES)}


@app.middleware("http")
async def request_id(request: Request, call_next):
    rid = request.headers.get("x-request-id") or uuid.uuid4().hex
    request.state.request_id = rid
    try:
        response = await call_next(request)
    except Exception as exc:
        # errors no handler claimed still leave with CORS and x-request-id headers
        logger.exception("Unhandled error on %s [request_id=%s]", request.url.path, rid)
        response = JSONResponse(status_code=500, content={"ok": False, "error": str(exc) or "unknown error"})
    response.headers["x-request-id"] = rid
    logger.info("%s %s -> %s [request_id=%s]", request.method, request.url.path, response.status_code, rid)
    return response


@app.exception_handler(OrchestratorError)
async def orchestrator_error(request: Request, exc: OrchestratorError):
    logger.warning("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    msg = f"Invalid request body: {where + ': ' if where else ''}{first.get('msg', 'malformed')}"
    return JSONResponse(status_code=400, content={"ok": False, "error": msg})


@app.exception_handler(requests.exceptions.RequestException)
async def upstream_unreachable(request: Request, exc: requests.exceptions.RequestException):
    return await orchestrator_error(request, UpstreamError(f"Upstream request failed: {exc}"))


# added last so it wraps the request id middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=[os.environ.get("ALLOW_ORIGIN") or "*"],
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
    expose_headers=["x-request-id"],
)


@app.get("/health")
def health():
    return {
        "ok": True,
        "time": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "git": {"ref": os.environ.get("GIT_REF"), "sha": os.environ.get("GIT_SHA")},
        "env": env_presence(),
    }


@app.post("/mvp")
def mvp(body: MvpRequest, request: Request):
    idea = (body.idea or "").strip()
    if not idea:
        raise InvalidRequestError("Missing idea")

    ctx = GenerationContext(
        idea=idea,
        idea_id=body.ideaId,
        thread=list(body.thread or []),
        request_id=request.state.request_id,
    )
    result = run_generation(ctx, ModelClient())
    return {"ok": True, "result": result.model_dump(exclude_none=True)}


@app.post("/sandbox-deploy")
def sandbox_deploy(body: SandboxDeployRequest, request: Request):
    if not body.confirm:
        return JSONResponse(status_code=400, content={"ok": False, "error": "confirm=false"})

    mode = (body.mode or os.environ.get("SANDBOX_DEPLOY_MODE") or "worker").strip().lower()
    if mode not in DEPLOY_MODES:
        raise InvalidRequestError(f"Unknown mode: {mode} (expected one of {', '.join(DEPLOY_MODES)})")
    if not body.files and not (body.idea or "").strip():
        raise InvalidRequestError("files or idea is required")

    # Fail on missing credentials before spending a model call
    ops = CloudflareOps()

    if body.files:
        ir = IR(name=body.name or "")
        files = apply_guardrails(body.files, **_limits())
    else:
        ctx = GenerationContext(
            idea=body.idea.strip(),
            idea_id=body.ideaId,
            thread=list(body.thread or []),
            request_id=request.state.request_id,
        )
        generated = run_generation(ctx, ModelClient())
        ir, files = generated.ir, generated.files

    name = f"{slugify(body.name or ir.name)}-{short_id()}"
    logger.info("sandbox-deploy mode=%s name=%s files=%d", mode, name, len(files))
    result = deploy_bundle(ops, name, files, ir, mode=mode, policy=BackoffPolicy.from_env())

    if result.ok:
        status = 200
    elif result.url:
        # deployed but the readiness poll ran out
        status = 202
    else:
        status = 502
    return JSONResponse(status_code=status, content=result.to_payload())


@app.post("/github-export")
def github_export(body: GitHubExportRequest):
    repo_name = (body.repoName or "").strip()
    if not repo_name:
        raise InvalidRequestError("repoName is required")
    files = apply_guardrails(body.files, **_limits())
    if not files:
        raise InvalidRequestError("files is required")

    logger.info("GitHub export request repo=%s count=%d", repo_name, len(files))
    gh = GitHubOps()
    repo_url = gh.export(repo_name, files, private=body.private)
    return {"ok": True, "repoUrl": repo_url}


def main():
    import uvicorn

    uvicorn.run("app:app", host=os.environ.get("HOST", "0.0.0.0"), port=env_int("PORT", 8000))


if __name__ == "__main__":
    main()
