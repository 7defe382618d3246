import os
import logging
import base64
from typing import Dict, List, Optional

import requests

from config import DEFAULT_GITHUB_API_BASE, http_timeout
from errors import ConfigError, UpstreamError

logger = logging.getLogger('github-ops')


class GitHubOps:
    """Repository export through the GitHub REST API.

    Environment variables expected:
    - GITHUB_TOKEN (required)
    - GITHUB_ORG (optional; repos are created under the authenticated user otherwise)

    Files are pushed one by one through the contents API. There is no
    transaction across files: a failure part-way leaves the earlier files pushed.
    """

    def __init__(self, token: str = None, org: str = None, api_base: str = None, session: requests.Session = None):
        self.token = token or os.environ.get('GITHUB_TOKEN')
        if not self.token:
            raise ConfigError('Missing env: GITHUB_TOKEN')
        self.org = org or os.environ.get('GITHUB_ORG')
        self.api_base = (api_base or os.environ.get('GITHUB_API_BASE') or DEFAULT_GITHUB_API_BASE).rstrip('/')
        self.session = session or requests.Session()
        self._owner: Optional[str] = self.org

    def _headers(self) -> dict:
        return {
            'Authorization': f'Bearer {self.token}',
            'Accept': 'application/vnd.github+json',
            'User-Agent': 'sandbox-orchestrator',
        }

    def _send(self, method: str, url: str, what: str, **kwargs) -> requests.Response:
        try:
            return getattr(self.session, method)(url, headers=self._headers(), timeout=http_timeout(), **kwargs)
        except requests.exceptions.RequestException as e:
            logger.warning('%s request failed: %s (%s)', what, e, url)
            raise UpstreamError(f'{what} failed: {e}', endpoint=url)

    def owner(self) -> str:
        if self._owner:
            return self._owner
        r = self._send('get', f'{self.api_base}/user', 'GitHub user lookup')
        if r.status_code != 200:
            raise UpstreamError(f'GitHub user lookup failed: {r.status_code}', upstream_status=r.status_code,
                                upstream_body=r.text)
        self._owner = r.json().get('login')
        return self._owner

    def ensure_repo(self, name: str, private: bool = True) -> dict:
        """Return the repo, creating it first if needed. Safe to call repeatedly."""
        owner = self.owner()
        r = self._send('get', f'{self.api_base}/repos/{owner}/{name}', 'GitHub repo lookup')
        if r.status_code == 200:
            logger.info('Repo %s/%s already exists', owner, name)
            return r.json()

        create_url = f'{self.api_base}/orgs/{self.org}/repos' if self.org else f'{self.api_base}/user/repos'
        pr = self._send('post', create_url, 'GitHub create repo',
                        json={'name': name, 'private': private, 'auto_init': False})
        if pr.status_code == 201:
            logger.info('Created GitHub repo %s/%s', owner, name)
            return pr.json()
        if pr.status_code == 422 and 'already exists' in (pr.text or '').lower():
            logger.info('Repo already exists (422)')
            return {'name': name, 'full_name': f'{owner}/{name}'}
        logger.warning('Create repo returned %s: %s', pr.status_code, pr.text[:500])
        raise UpstreamError(f'GitHub create repo failed: {pr.status_code}', upstream_status=pr.status_code,
                            upstream_body=pr.text)

    def push_files(self, name: str, files: Dict[str, str], message: str) -> List[str]:
        owner = self.owner()
        pushed: List[str] = []
        for rel, content in files.items():
            put_url = f'{self.api_base}/repos/{owner}/{name}/contents/{requests.utils.quote(rel)}'

            # Current sha is required to update an existing file
            gr = self._send('get', put_url, f'GitHub lookup of {rel}')
            current = gr.json() if gr.status_code == 200 else None
            # a list means the path is a directory
            existing_sha = current.get('sha') if isinstance(current, dict) else None

            payload = {'message': message, 'content': base64.b64encode(content.encode('utf-8')).decode('ascii')}
            if existing_sha:
                payload['sha'] = existing_sha

            try:
                upr = self._send('put', put_url, f'GitHub push of {rel}', json=payload)
            except UpstreamError as e:
                raise UpstreamError(f'{e.message} ({len(pushed)} of {len(files)} file(s) pushed)', endpoint=put_url)
            if upr.status_code not in (200, 201):
                logger.warning('Uploading %s returned %s: %s (already pushed: %s)', rel, upr.status_code,
                               upr.text[:500], pushed)
                raise UpstreamError(
                    f'GitHub push failed for {rel}: {upr.status_code} ({len(pushed)} of {len(files)} file(s) pushed)',
                    upstream_status=upr.status_code, upstream_body=upr.text,
                )
            pushed.append(rel)
        logger.info('Uploaded %d file(s) via GitHub API to %s/%s', len(pushed), owner, name)
        return pushed

    def export(self, name: str, files: Dict[str, str], private: bool = True,
               message: str = 'Initial commit via sandbox orchestrator') -> str:
        self.ensure_repo(name, private=private)
        self.push_files(name, files, message)
        return f'https://github.com/{self.owner()}/{name}'
