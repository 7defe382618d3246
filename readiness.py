import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional, Sequence

import requests

from config import env_float, env_int, http_timeout

logger = logging.getLogger('readiness')

DEFAULT_PATHS = ('/api/health', '/')

# Bodies Cloudflare serves while a new script or project is still propagating.
PLACEHOLDER_MARKERS = (
    'there is nothing here yet',
    'nothing is here yet',
    'this domain is not configured',
    'error 1042',
    'error 1101',
    'dns_probe_finished',
)


@dataclass
class BackoffPolicy:
    """How long to keep probing and how long to wait between probes.

    ``factor=1`` and ``jitter=0`` is a fixed-delay loop.
    """

    max_attempts: int = 8
    base_delay: float = 0.5
    factor: float = 1.0
    max_delay: float = 10.0
    jitter: float = 0.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    rng: Callable[[], float] = field(default=random.random, repr=False)

    @classmethod
    def from_env(cls) -> 'BackoffPolicy':
        return cls(
            max_attempts=env_int('READY_MAX_ATTEMPTS', 8),
            base_delay=env_float('READY_DELAY_SECONDS', 0.5),
        )

    def delay(self, attempt: int) -> float:
        """Wait after the given zero-based attempt."""
        d = min(self.base_delay * (self.factor ** attempt), self.max_delay)
        if self.jitter:
            d += self.jitter * self.rng()
        return d

    def delays(self) -> Iterator[float]:
        for i in range(max(self.max_attempts - 1, 0)):
            yield self.delay(i)


@dataclass
class ReadinessReport:
    ready: bool
    attempts: int
    url: str
    last_status: Optional[int] = None
    last_error: Optional[str] = None

    def diagnostics(self) -> dict:
        d = {'attempts': self.attempts, 'probe_url': self.url}
        if self.last_status is not None:
            d['last_status'] = self.last_status
        if self.last_error:
            d['last_error'] = self.last_error
        return d


def is_placeholder(response: requests.Response) -> bool:
    body = (response.text or '')[:4000].lower()
    return any(marker in body for marker in PLACEHOLDER_MARKERS)


def _join(base_url: str, path: str) -> str:
    return base_url.rstrip('/') + '/' + path.lstrip('/')


def wait_until_ready(
    base_url: str,
    policy: Optional[BackoffPolicy] = None,
    session: Optional[requests.Session] = None,
    paths: Sequence[str] = DEFAULT_PATHS,
) -> ReadinessReport:
    """Probe ``paths`` under ``base_url`` until one answers with real content.

    Gives up after ``policy.max_attempts`` rounds; never raises for network errors.
    """
    policy = policy or BackoffPolicy.from_env()
    session = session or requests.Session()
    report = ReadinessReport(ready=False, attempts=0, url=base_url)
    delays = policy.delays()

    for attempt in range(policy.max_attempts):
        report.attempts = attempt + 1
        for path in paths:
            target = _join(base_url, path)
            try:
                r = session.get(target, headers={'Cache-Control': 'no-cache'}, timeout=http_timeout())
            except requests.exceptions.RequestException as e:
                report.last_error = str(e)
                logger.info('Probe %s failed (attempt %d/%d): %s', target, attempt + 1, policy.max_attempts, e)
                continue
            report.last_status = r.status_code
            if 200 <= r.status_code < 300 and not is_placeholder(r):
                logger.info('Ready: %s answered %s after %d attempt(s)', target, r.status_code, attempt + 1)
                report.ready = True
                report.url = target
                return report
            logger.info('Probe %s not ready: status=%s (attempt %d/%d)', target, r.status_code, attempt + 1, policy.max_attempts)
        wait = next(delays, None)
        if wait is not None:
            policy.sleep(wait)

    logger.warning('Gave up waiting for %s after %d attempts', base_url, report.attempts)
    return report
