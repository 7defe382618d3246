from unittest.mock import MagicMock

import pytest

ENV_VARS = (
    'OPENAI_API_KEY', 'OPENAI_MODEL', 'OPENAI_BASE_URL',
    'GITHUB_TOKEN', 'GITHUB_ORG', 'GITHUB_API_BASE',
    'CLOUDFLARE_API_TOKEN', 'CLOUDFLARE_ACCOUNT_ID', 'CF_WORKERS_SUBDOMAIN', 'CLOUDFLARE_API_BASE',
    'ORCHESTRATOR_URL', 'MAX_FILES', 'MAX_BYTES', 'READY_MAX_ATTEMPTS', 'READY_DELAY_SECONDS',
    'SANDBOX_DEPLOY_MODE', 'GIT_REF', 'GIT_SHA',
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Tests never see real credentials from the developer's shell."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def make_response(status_code=200, json_body=None, text=None):
    r = MagicMock()
    r.status_code = status_code
    if json_body is None:
        r.json.side_effect = ValueError('no json')
        r.text = text or ''
    else:
        r.json.return_value = json_body
        r.text = text if text is not None else str(json_body)
    return r


@pytest.fixture
def response():
    return make_response
