import os
import base64
import hashlib
import json
import logging
from typing import Dict, List, Optional

import requests

from bundle import IR, DeployResult
from config import DEFAULT_CLOUDFLARE_API_BASE, http_timeout
from errors import ConfigError, UpstreamError
from readiness import BackoffPolicy, wait_until_ready

logger = logging.getLogger('cloudflare-ops')

COMPATIBILITY_DATE = '2024-11-01'
DEPLOY_MODES = ('worker', 'pages')
UPLOAD_BATCH = 50


def error_message(r: requests.Response, fallback: str) -> str:
    try:
        j = r.json()
    except ValueError:
        j = {}
    if isinstance(j, dict):
        for key in ('errors', 'messages'):
            items = j.get(key) or []
            if items and isinstance(items[0], dict) and items[0].get('message'):
                return items[0]['message']
    return f'{fallback} ({r.status_code}) :: {(r.text or "")[:200]}'


def _content_type(path: str) -> str:
    ext = path.rsplit('.', 1)[-1].lower() if '.' in path else ''
    return {
        'html': 'text/html; charset=utf-8',
        'htm': 'text/html; charset=utf-8',
        'css': 'text/css; charset=utf-8',
        'js': 'application/javascript; charset=utf-8',
        'mjs': 'application/javascript; charset=utf-8',
        'json': 'application/json; charset=utf-8',
        'svg': 'image/svg+xml',
        'txt': 'text/plain; charset=utf-8',
        'md': 'text/markdown; charset=utf-8',
        'xml': 'application/xml',
        'webmanifest': 'application/manifest+json',
    }.get(ext, 'text/plain; charset=utf-8')


MODULE_WORKER_TEMPLATE = """// Sandbox module worker: serves the embedded bundle plus /api/health and /api/echo.
const SERVICE = __SERVICE__;
const FILES = __FILES__;
const TYPES = __TYPES__;

function json(data, status = 200) {
  return new Response(JSON.stringify(data), { status, headers: { "content-type": "application/json" } });
}

export default {
  async fetch(req, env, ctx) {
    const url = new URL(req.url);
    if (url.pathname === "/api/health" && req.method === "GET") {
      return json({ ok: true, service: SERVICE });
    }
    if (url.pathname === "/api/echo" && req.method === "POST") {
      try {
        const b = await req.json();
        return json({ ok: true, data: b });
      } catch {
        return json({ ok: false, error: "Invalid JSON" }, 400);
      }
    }
    let path = url.pathname.replace(/^\\/+/, "");
    if (path === "" || path.endsWith("/")) path += "index.html";
    if (Object.prototype.hasOwnProperty.call(FILES, path)) {
      return new Response(FILES[path], { headers: { "content-type": TYPES[path] } });
    }
    return new Response("Not found", { status: 404 });
  }
};
"""


def render_module_worker(ir: IR, files: Dict[str, str]) -> str:
    # the edge script itself is not served as an asset
    assets = {p: c for p, c in files.items() if p != '_worker.js'}
    return (
        MODULE_WORKER_TEMPLATE
        .replace('__TYPES__', json.dumps({p: _content_type(p) for p in assets}))
        .replace('__SERVICE__', json.dumps(ir.name))
        .replace('__FILES__', json.dumps(assets))
    )


def asset_hash(path: str, content: str) -> str:
    """Content address for a Pages asset: 32 hex chars over body + extension."""
    ext = path.rsplit('.', 1)[-1] if '.' in path else ''
    b64 = base64.b64encode(content.encode('utf-8')).decode('ascii')
    return hashlib.sha256((b64 + ext).encode('ascii')).hexdigest()[:32]


class CloudflareOps:
    """Cloudflare Workers Scripts and Pages Direct Upload calls.

    Environment variables expected:
    - CLOUDFLARE_API_TOKEN and CLOUDFLARE_ACCOUNT_ID (required)
    - CF_WORKERS_SUBDOMAIN (used to build workers.dev URLs)
    """

    def __init__(self, token: str = None, account_id: str = None, subdomain: str = None,
                 api_base: str = None, session: requests.Session = None):
        self.token = token or os.environ.get('CLOUDFLARE_API_TOKEN')
        self.account_id = account_id or os.environ.get('CLOUDFLARE_ACCOUNT_ID')
        self.subdomain = subdomain or os.environ.get('CF_WORKERS_SUBDOMAIN')
        self.api_base = (api_base or os.environ.get('CLOUDFLARE_API_BASE') or DEFAULT_CLOUDFLARE_API_BASE).rstrip('/')
        self.session = session or requests.Session()
        if not self.token or not self.account_id:
            raise ConfigError('Missing CLOUDFLARE_API_TOKEN or CLOUDFLARE_ACCOUNT_ID')

    def _headers(self, token: str = None) -> dict:
        return {'Authorization': f'Bearer {token or self.token}'}

    def _account_url(self, path: str) -> str:
        return f'{self.api_base}/accounts/{self.account_id}/{path.lstrip("/")}'

    def _send(self, method: str, url: str, fallback: str, **kwargs) -> requests.Response:
        try:
            return getattr(self.session, method)(url, timeout=http_timeout(), **kwargs)
        except requests.exceptions.RequestException as e:
            logger.warning('%s: %s endpoint=%s', fallback, e, url)
            raise UpstreamError(f'{fallback}: {e}', endpoint=url)

    def _check(self, r: requests.Response, fallback: str, endpoint: str) -> dict:
        if not 200 <= r.status_code < 300:
            msg = error_message(r, fallback)
            logger.warning('%s: status=%s endpoint=%s body=%s', fallback, r.status_code, endpoint, (r.text or '')[:500])
            raise UpstreamError(msg, upstream_status=r.status_code, upstream_body=r.text, endpoint=endpoint)
        try:
            return r.json()
        except ValueError:
            return {}

    # --- Workers -------------------------------------------------------------

    def script_url(self, name: str) -> str:
        return self._account_url(f'workers/scripts/{requests.utils.quote(name, safe="")}')

    def upload_worker_script(self, name: str, code: str) -> dict:
        url = self.script_url(name)
        metadata = {'main_module': 'index.js', 'compatibility_date': COMPATIBILITY_DATE}
        parts = {
            'metadata': ('metadata.json', json.dumps(metadata), 'application/json'),
            'index.js': ('index.js', code, 'application/javascript+module'),
        }
        logger.info('Uploading worker script %s (%d bytes)', name, len(code))
        fallback = 'Upload script failed'
        r = self._send('put', url, fallback, headers=self._headers(), files=parts)
        return self._check(r, fallback, url)

    def enable_workers_dev(self, name: str) -> dict:
        url = self.script_url(name) + '/settings'
        parts = {'settings': ('settings.json', json.dumps({'workers_dev': True}), 'application/json')}
        fallback = 'Enable workers_dev failed'
        r = self._send('patch', url, fallback, headers=self._headers(), files=parts)
        return self._check(r, fallback, url)

    def worker_url(self, name: str) -> Optional[str]:
        if not self.subdomain:
            return None
        return f'https://{name}.{self.subdomain}.workers.dev/'

    # --- Pages ---------------------------------------------------------------

    def ensure_pages_project(self, name: str) -> dict:
        """Create the Pages project; an existing project counts as success."""
        url = self._account_url('pages/projects')
        r = self._send('post', url, 'Create Pages project failed', headers=self._headers(),
                       json={'name': name, 'production_branch': 'main'})
        if r.status_code == 409 or (r.status_code == 400 and 'already exists' in (r.text or '').lower()):
            logger.info('Pages project %s already exists (%s)', name, r.status_code)
            return {'name': name, 'existing': True}
        body = self._check(r, 'Create Pages project failed', url)
        logger.info('Created Pages project %s', name)
        return body.get('result') or {'name': name}

    def _upload_token(self, name: str) -> str:
        url = self._account_url(f'pages/projects/{name}/upload-token')
        body = self._check(self._send('get', url, 'Fetch upload token failed', headers=self._headers()),
                           'Fetch upload token failed', url)
        jwt = (body.get('result') or {}).get('jwt')
        if not jwt:
            raise UpstreamError('Fetch upload token failed: no jwt in response')
        return jwt

    def upload_pages_bundle(self, name: str, files: Dict[str, str]) -> dict:
        assets = {p: c for p, c in files.items() if p != '_worker.js'}
        manifest = {'/' + p: asset_hash(p, c) for p, c in assets.items()}
        by_hash = {asset_hash(p, c): (p, c) for p, c in assets.items()}
        jwt = self._upload_token(name)

        url = f'{self.api_base}/pages/assets/check-missing'
        fallback = 'Check missing assets failed'
        body = self._check(self._send('post', url, fallback, headers=self._headers(jwt), json={'hashes': list(by_hash)}),
                           fallback, url)
        missing: List[str] = body.get('result') or []
        logger.info('Pages %s: %d asset(s), %d missing', name, len(by_hash), len(missing))

        url = f'{self.api_base}/pages/assets/upload'
        for i in range(0, len(missing), UPLOAD_BATCH):
            payload = []
            for h in missing[i:i + UPLOAD_BATCH]:
                path, content = by_hash[h]
                payload.append({
                    'key': h,
                    'value': base64.b64encode(content.encode('utf-8')).decode('ascii'),
                    'metadata': {'contentType': _content_type(path)},
                    'base64': True,
                })
            self._check(self._send('post', url, 'Upload assets failed', headers=self._headers(jwt), json=payload),
                        'Upload assets failed', url)

        url = f'{self.api_base}/pages/assets/upsert-hashes'
        fallback = 'Upsert asset hashes failed'
        self._check(self._send('post', url, fallback, headers=self._headers(jwt), json={'hashes': list(by_hash)}),
                    fallback, url)

        url = self._account_url(f'pages/projects/{name}/deployments')
        parts = {'manifest': (None, json.dumps(manifest))}
        if '_worker.js' in files:
            parts['_worker.js'] = ('_worker.js', files['_worker.js'], 'application/javascript+module')
        body = self._check(self._send('post', url, 'Create deployment failed', headers=self._headers(), files=parts),
                           'Create deployment failed', url)
        return body.get('result') or {}

    def pages_url(self, name: str, project: Optional[dict] = None, deployment: Optional[dict] = None) -> str:
        """Project subdomain first, then the deployment URL, then the default host."""
        subdomain = (project or {}).get('subdomain')
        if subdomain:
            return f'https://{subdomain.strip("/")}/'
        dep_url = (deployment or {}).get('url')
        if dep_url:
            return dep_url.rstrip('/') + '/'
        return f'https://{name}.pages.dev/'


def deploy_bundle(
    ops: CloudflareOps,
    name: str,
    files: Dict[str, str],
    ir: IR,
    mode: str = 'worker',
    policy: Optional[BackoffPolicy] = None,
    session: Optional[requests.Session] = None,
) -> DeployResult:
    """Upload a bundle and wait for it to serve.

    Returns ``ok=False`` with the URL when the readiness poll runs out; the
    resource usually starts serving shortly after.
    """
    if mode not in DEPLOY_MODES:
        raise ValueError(f'unknown deploy mode: {mode}')
    try:
        if mode == 'worker':
            ops.upload_worker_script(name, render_module_worker(ir, files))
            ops.enable_workers_dev(name)
            url = ops.worker_url(name)
        else:
            project = ops.ensure_pages_project(name)
            deployment = ops.upload_pages_bundle(name, files)
            url = ops.pages_url(name, project, deployment)
            if deployment.get('url'):
                logger.info('Pages deployment %s at %s', deployment.get('id'), deployment['url'])
    except UpstreamError as e:
        return DeployResult(ok=False, name=name, error=e.message, status=e.upstream_status,
                            diagnostics={'endpoint': e.endpoint, 'mode': mode})

    if not url:
        logger.info('No CF_WORKERS_SUBDOMAIN configured; skipping readiness poll for %s', name)
        return DeployResult(ok=True, name=name, diagnostics={'mode': mode})

    report = wait_until_ready(url, policy=policy, session=session)
    diagnostics = {'mode': mode, **report.diagnostics()}
    if not report.ready:
        return DeployResult(ok=False, url=url, name=name, diagnostics=diagnostics,
                            error='Deployed, but not serving yet; try the URL again shortly')
    return DeployResult(ok=True, url=url, name=name, diagnostics=diagnostics)
