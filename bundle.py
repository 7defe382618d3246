"""IR and file-bundle helpers shared by generation and deployment.

A bundle is a plain ``dict`` of relative path -> UTF-8 text. Everything here is
pure: no network, no environment reads except through the caller's arguments.
"""
import html
import json
import logging
import re
import secrets
import string
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger('bundle')

MAX_FILES = 50
MAX_BYTES = 300_000  # ~300 KB of UTF-8 text

APP_TYPES = ('spa_api', 'spa', 'api')
DEFAULT_APP_NAME = 'Generated App'


class ApiRoute(BaseModel):
    method: str = 'GET'
    path: str

    @field_validator('method', mode='before')
    @classmethod
    def _upper(cls, v):
        return str(v or 'GET').strip().upper()


class IR(BaseModel):
    name: str = DEFAULT_APP_NAME
    app_type: str = 'spa_api'
    pages: List[str] = Field(default_factory=lambda: ['/'])
    api_routes: List[ApiRoute] = Field(default_factory=list)
    notes: Optional[str] = None
    features: Optional[List[str]] = None

    model_config = {'extra': 'ignore'}

    @field_validator('name', mode='before')
    @classmethod
    def _name(cls, v):
        v = str(v or '').strip()
        return v or DEFAULT_APP_NAME

    @field_validator('app_type', mode='before')
    @classmethod
    def _app_type(cls, v):
        return v if v in APP_TYPES else 'spa_api'

    @field_validator('pages', mode='before')
    @classmethod
    def _pages(cls, v):
        if not isinstance(v, list):
            return ['/']
        return [str(p) for p in v]

    @field_validator('api_routes', mode='before')
    @classmethod
    def _routes(cls, v):
        if not isinstance(v, list):
            return []
        return [r for r in v if isinstance(r, (dict, ApiRoute)) and (r.get('path') if isinstance(r, dict) else r.path)]


class Smoke(BaseModel):
    passed: bool = True
    logs: List[str] = Field(default_factory=list)


class MvpResult(BaseModel):
    ir: IR
    files: Dict[str, str]
    smoke: Smoke = Field(default_factory=Smoke)


class DeployResult(BaseModel):
    ok: bool
    url: Optional[str] = None
    name: Optional[str] = None
    error: Optional[str] = None
    status: Optional[int] = None
    diagnostics: Optional[Dict[str, Any]] = None

    def to_payload(self) -> dict:
        return self.model_dump(exclude_none=True)


def normalize_path(path: Any) -> Optional[str]:
    p = str(path or '').replace('\\', '/')
    p = re.sub(r'/+', '/', p).lstrip('/')
    if not p or any(part == '..' for part in p.split('/')):
        return None
    return p


def byte_size(content: str) -> int:
    return len(content.encode('utf-8'))


def bundle_stats(files: Dict[str, str]) -> Tuple[int, int]:
    return len(files), sum(byte_size(c) for c in files.values())


def apply_guardrails(files: Dict[Any, Any], max_files: int = MAX_FILES, max_bytes: int = MAX_BYTES) -> Dict[str, str]:
    """Keep files in order while both caps hold; drop the rest.

    Over-limit bundles are truncated, not rejected. Callers get fewer files,
    never an error.
    """
    out: Dict[str, str] = {}
    total = 0
    dropped = []
    for raw_path, raw_content in (files or {}).items():
        path = normalize_path(raw_path)
        if path is None:
            dropped.append(str(raw_path))
            continue
        content = raw_content if isinstance(raw_content, str) else ('' if raw_content is None else str(raw_content))
        size = byte_size(content)
        if len(out) >= max_files or total + size > max_bytes:
            dropped.append(path)
            continue
        out[path] = content
        total += size
    if dropped:
        logger.warning('Guardrails dropped %d file(s): %s', len(dropped), dropped[:10])
    return out


def slugify(name: Optional[str], max_len: int = 24) -> str:
    s = re.sub(r'[^a-z0-9-]', '-', (name or '').lower())
    s = re.sub(r'-+', '-', s)[:max_len].strip('-')
    return s or 'app'


_ALPHABET = string.digits + string.ascii_lowercase


def short_id(length: int = 8) -> str:
    return ''.join(secrets.choice(_ALPHABET) for _ in range(length))


def _routes_text(ir: IR) -> str:
    if not ir.api_routes:
        return '-'
    return ', '.join(f'{r.method} {r.path}' for r in ir.api_routes)


def render_landing_page(ir: IR) -> str:
    name = html.escape(ir.name)
    pages = html.escape(', '.join(ir.pages) or '/')
    notes = f'<p>{html.escape(ir.notes)}</p>\n' if ir.notes else ''
    return (
        '<!doctype html>\n'
        '<html lang="en">\n'
        '<head>\n'
        '  <meta charset="utf-8">\n'
        '  <meta name="viewport" content="width=device-width, initial-scale=1">\n'
        f'  <title>{name}</title>\n'
        '  <style>body{font-family:system-ui,-apple-system,Segoe UI,Roboto,Helvetica,Arial,sans-serif;'
        'margin:2rem;line-height:1.5;max-width:860px}'
        'code{background:#f6f7f9;padding:.2rem .35rem;border-radius:.25rem}</style>\n'
        '</head>\n'
        '<body>\n'
        f'<h1>{name}</h1>\n'
        f'<p><strong>Type:</strong> {html.escape(ir.app_type)}</p>\n'
        f'<p><strong>Pages:</strong> {pages}</p>\n'
        f'<p><strong>API Routes:</strong> {html.escape(_routes_text(ir))}</p>\n'
        f'{notes}'
        '<p>This is a sandbox deployment created by the sandbox orchestrator.</p>\n'
        '<hr>\n'
        '<p>Try: <code>GET /api/health</code> or send <code>{"message":"hi"}</code> to <code>POST /api/echo</code>.</p>\n'
        '</body>\n'
        '</html>\n'
    )


PROXY_WORKER_TEMPLATE = """// Pages Advanced Mode worker: proxies /api/* to the orchestrator,
// answers CORS preflight and serves static assets with an SPA fallback.
const ORCHESTRATOR_URL = __ORCHESTRATOR_URL__;

function corsHeaders() {
  return {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET,POST,OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, X-Requested-With",
    "Vary": "Origin",
  };
}

function addDiag(h) {
  h.set("x-lw-proxy", "pages");
  return h;
}

function isApiPath(pathname) {
  return pathname === "/api" || pathname.startsWith("/api/") || pathname.includes("/api/");
}

function normalizeApiPath(pathname) {
  if (pathname === "/api") return "/api";
  const idx = pathname.indexOf("/api/");
  return idx >= 0 ? pathname.slice(idx) : pathname;
}

async function serveSPA(req, env) {
  const res = await env.ASSETS.fetch(req);
  if (res.status !== 404) return res;
  const accepts = req.headers.get("accept") || "";
  const isGetLike = req.method === "GET" || req.method === "HEAD";
  if (isGetLike && accepts.includes("text/html")) {
    const indexReq = new Request(new URL("/index.html", req.url), req);
    const indexRes = await env.ASSETS.fetch(indexReq);
    if (indexRes.status !== 404) return indexRes;
  }
  return res;
}

export default {
  async fetch(req, env) {
    const url = new URL(req.url);
    if (isApiPath(url.pathname)) {
      if (req.method === "OPTIONS") {
        return new Response(null, { status: 204, headers: addDiag(new Headers(corsHeaders())) });
      }
      const upstream = new URL(env.ORCHESTRATOR_URL || ORCHESTRATOR_URL);
      upstream.pathname = normalizeApiPath(url.pathname).replace(/^\\/api/, "") || "/";
      upstream.search = url.search;
      const hasBody = !(req.method === "GET" || req.method === "HEAD");
      const resp = await fetch(upstream.toString(), {
        method: req.method,
        headers: req.headers,
        body: hasBody ? req.body : undefined,
        redirect: "manual",
      });
      const h = addDiag(new Headers(resp.headers));
      for (const [k, v] of Object.entries(corsHeaders())) h.set(k, v);
      return new Response(resp.body, { status: resp.status, statusText: resp.statusText, headers: h });
    }
    return serveSPA(req, env);
  },
};
"""


def render_proxy_worker(orchestrator_url: str) -> str:
    return PROXY_WORKER_TEMPLATE.replace('__ORCHESTRATOR_URL__', json.dumps(orchestrator_url))


def repair_bundle(ir: IR, files: Dict[str, str], orchestrator_url: str) -> Tuple[Dict[str, str], List[str]]:
    """Fill in the files a sandbox needs to serve something useful."""
    repaired = dict(files)
    logs: List[str] = []
    index = repaired.pop('index.html', None)
    if not index:
        index = render_landing_page(ir)
        logs.append('injected index.html landing page')
    # index.html goes first so guardrails never drop it
    repaired = {'index.html': index, **repaired}
    if ir.app_type != 'spa' and '_worker.js' not in repaired:
        repaired['_worker.js'] = render_proxy_worker(orchestrator_url)
        logs.append('injected default _worker.js proxy')
    return repaired, logs


def run_smoke(files: Dict[str, str]) -> Smoke:
    # Placeholder until bundles are exercised in a local runtime.
    count, total = bundle_stats(files)
    return Smoke(passed=True, logs=['smoke stub passed', f'{count} file(s), {total} bytes'])
