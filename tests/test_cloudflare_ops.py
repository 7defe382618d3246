"""CloudflareOps and deploy dispatcher tests with mocked sessions (no network calls)."""
import json
from unittest.mock import MagicMock

import pytest
import requests

from bundle import IR
from cloudflare_ops import CloudflareOps, asset_hash, deploy_bundle, error_message, render_module_worker
from errors import ConfigError, UpstreamError
from readiness import BackoffPolicy

FILES = {'index.html': '<html><title>Todo App</title><h1>Todo App</h1></html>', 'app.js': 'console.log(1)'}


def make_ops(session=None, subdomain='demo'):
    return CloudflareOps(token='cf-token', account_id='acc123', subdomain=subdomain, session=session or MagicMock())


def no_sleep_policy(max_attempts=2):
    return BackoffPolicy(max_attempts=max_attempts, base_delay=0.5, sleep=lambda s: None)


def test_requires_credentials():
    with pytest.raises(ConfigError, match='CLOUDFLARE_API_TOKEN'):
        CloudflareOps()


def test_reads_credentials_from_env(monkeypatch):
    monkeypatch.setenv('CLOUDFLARE_API_TOKEN', 't')
    monkeypatch.setenv('CLOUDFLARE_ACCOUNT_ID', 'a')
    monkeypatch.setenv('CF_WORKERS_SUBDOMAIN', 'me')

    ops = CloudflareOps(session=MagicMock())

    assert ops.worker_url('svc') == 'https://svc.me.workers.dev/'


def test_error_message_prefers_api_errors(response):
    r = response(400, {'errors': [{'code': 10021, 'message': 'Uncaught SyntaxError'}]})

    assert error_message(r, 'Upload script failed') == 'Uncaught SyntaxError'


def test_error_message_falls_back_to_body(response):
    r = response(500, None, text='upstream exploded')

    assert error_message(r, 'Upload script failed') == 'Upload script failed (500) :: upstream exploded'


def test_module_worker_embeds_bundle():
    files = dict(FILES, **{'_worker.js': 'export default {}'})

    code = render_module_worker(IR(name='Todo App'), files)

    assert 'const SERVICE = "Todo App";' in code
    assert json.dumps(FILES['index.html']) in code
    assert '_worker.js' not in code.split('const FILES = ')[1].split(';\n')[0]


def test_ensure_pages_project_is_idempotent(response):
    session = MagicMock()
    session.post.side_effect = [
        response(200, {'success': True, 'result': {'name': 'todo'}}),
        response(409, {'success': False, 'errors': [{'code': 8000002, 'message': 'A project with this name already exists.'}]}),
    ]
    ops = make_ops(session)

    first = ops.ensure_pages_project('todo')
    second = ops.ensure_pages_project('todo')

    assert first['name'] == 'todo'
    assert second == {'name': 'todo', 'existing': True}


def test_upload_pages_bundle_uploads_only_missing(response):
    session = MagicMock()
    missing = asset_hash('app.js', FILES['app.js'])
    session.get.return_value = response(200, {'result': {'jwt': 'upload-jwt'}})
    session.post.side_effect = [
        response(200, {'result': [missing]}),
        response(200, {'success': True}),
        response(200, {'success': True}),
        response(200, {'result': {'id': 'dep1', 'url': 'https://abc.todo.pages.dev'}}),
    ]
    ops = make_ops(session)
    files = dict(FILES, **{'_worker.js': 'export default {}'})

    result = ops.upload_pages_bundle('todo', files)

    assert result['id'] == 'dep1'
    upload_call = session.post.call_args_list[1]
    assert [a['key'] for a in upload_call.kwargs['json']] == [missing]
    assert upload_call.kwargs['headers']['Authorization'] == 'Bearer upload-jwt'
    deploy_call = session.post.call_args_list[3]
    manifest = json.loads(deploy_call.kwargs['files']['manifest'][1])
    assert set(manifest) == {'/index.html', '/app.js'}
    assert '_worker.js' in deploy_call.kwargs['files']


def test_deploy_worker_ready(response):
    session = MagicMock()
    session.put.return_value = response(200, {'success': True})
    session.patch.return_value = response(200, {'success': True})
    probe = MagicMock()
    probe.get.return_value = response(200, {'ok': True})

    result = deploy_bundle(make_ops(session), 'todo-abc', FILES, IR(name='Todo App'),
                           mode='worker', policy=no_sleep_policy(), session=probe)

    assert result.ok is True
    assert result.url == 'https://todo-abc.demo.workers.dev/'
    assert result.name == 'todo-abc'
    assert session.put.call_args.args[0].endswith('/accounts/acc123/workers/scripts/todo-abc')
    assert 'settings' in session.patch.call_args.kwargs['files']


def test_deploy_readiness_exhausted_reports_url(response):
    session = MagicMock()
    session.put.return_value = response(200, {'success': True})
    session.patch.return_value = response(200, {'success': True})
    probe = MagicMock()
    probe.get.return_value = response(404, None, text='nothing here')

    result = deploy_bundle(make_ops(session), 'todo-abc', FILES, IR(name='Todo App'),
                           policy=no_sleep_policy(3), session=probe)

    assert result.ok is False
    assert result.url == 'https://todo-abc.demo.workers.dev/'
    assert 'not serving yet' in result.error
    assert result.diagnostics['attempts'] == 3


def test_deploy_upload_failure_carries_status_and_endpoint(response):
    session = MagicMock()
    session.put.return_value = response(403, {'errors': [{'message': 'Authentication error'}]})

    result = deploy_bundle(make_ops(session), 'todo-abc', FILES, IR(name='Todo App'), policy=no_sleep_policy())

    assert result.ok is False
    assert result.url is None
    assert result.error == 'Authentication error'
    assert result.status == 403
    assert result.diagnostics['endpoint'].endswith('/workers/scripts/todo-abc')
    session.patch.assert_not_called()


def test_deploy_network_error_is_reported_not_raised():
    session = MagicMock()
    session.put.side_effect = requests.exceptions.ConnectionError('api.cloudflare.com unreachable')

    result = deploy_bundle(make_ops(session), 'todo-abc', FILES, IR(name='Todo App'), policy=no_sleep_policy())

    assert result.ok is False
    assert result.url is None
    assert result.status is None
    assert 'unreachable' in result.error
    assert result.diagnostics['endpoint'].endswith('/workers/scripts/todo-abc')
    session.patch.assert_not_called()


def test_pages_upload_timeout_names_endpoint(response):
    session = MagicMock()
    session.get.return_value = response(200, {'result': {'jwt': 'upload-jwt'}})
    session.post.side_effect = requests.exceptions.Timeout('read timed out')

    with pytest.raises(UpstreamError) as exc:
        make_ops(session).upload_pages_bundle('todo', FILES)

    assert exc.value.endpoint.endswith('/pages/assets/check-missing')
    assert exc.value.status_code == 502


def test_deploy_without_subdomain_skips_poll(response):
    session = MagicMock()
    session.put.return_value = response(200, {'success': True})
    session.patch.return_value = response(200, {'success': True})
    probe = MagicMock()

    result = deploy_bundle(make_ops(session, subdomain=None), 'todo-abc', FILES, IR(), session=probe)

    assert result.ok is True
    assert result.url is None
    probe.get.assert_not_called()


def test_deploy_pages_mode(response):
    ops = make_ops()
    ops.ensure_pages_project = MagicMock(return_value={'name': 'todo-abc'})
    ops.upload_pages_bundle = MagicMock(return_value={'id': 'dep1'})
    probe = MagicMock()
    probe.get.return_value = response(200, None, text='<html>Todo App</html>')

    result = deploy_bundle(ops, 'todo-abc', FILES, IR(name='Todo App'), mode='pages',
                           policy=no_sleep_policy(), session=probe)

    assert result.ok is True
    assert result.url == 'https://todo-abc.pages.dev/'
    ops.upload_pages_bundle.assert_called_once_with('todo-abc', FILES)


def test_deploy_pages_mode_uses_project_subdomain(response):
    ops = make_ops()
    ops.ensure_pages_project = MagicMock(return_value={'name': 'todo-abc', 'subdomain': 'todo-abc-3x9.pages.dev'})
    ops.upload_pages_bundle = MagicMock(return_value={'id': 'dep1', 'url': 'https://f00d.todo-abc-3x9.pages.dev'})
    probe = MagicMock()
    probe.get.return_value = response(200, None, text='<html>Todo App</html>')

    result = deploy_bundle(ops, 'todo-abc', FILES, IR(name='Todo App'), mode='pages',
                           policy=no_sleep_policy(), session=probe)

    assert result.url == 'https://todo-abc-3x9.pages.dev/'
    assert probe.get.call_args.args[0].startswith('https://todo-abc-3x9.pages.dev/')


def test_pages_url_falls_back_to_deployment_url():
    ops = make_ops()

    assert ops.pages_url('todo', {'name': 'todo', 'existing': True}, {'url': 'https://f00d.todo.pages.dev'}) == \
        'https://f00d.todo.pages.dev/'
    assert ops.pages_url('todo') == 'https://todo.pages.dev/'


def test_deploy_rejects_unknown_mode():
    with pytest.raises(ValueError):
        deploy_bundle(make_ops(), 'x', FILES, IR(), mode='ftp')
