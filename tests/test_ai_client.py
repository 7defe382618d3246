"""Unit tests for ModelClient with a mocked HTTP session (no network calls)."""
import json
from unittest.mock import MagicMock

import pytest
import requests

from ai_client import (
    MAX_THREAD_MESSAGES,
    ChatCompletion,
    ModelClient,
    OutputMessage,
    OutputText,
    UnrecognizedShape,
    build_messages,
    decode_response,
    extract_json_object,
    parse_model_json,
)
from errors import ConfigError, InvalidRequestError, MalformedOutputError, UpstreamError

BUNDLE = {
    'ir': {'name': 'Todo App', 'app_type': 'spa', 'pages': ['/'], 'api_routes': []},
    'files': {'index.html': '<html><title>Todo App</title></html>'},
    'smoke': {'passed': True, 'logs': []},
}


def responses_body(text):
    return {'output': [{'type': 'message', 'content': [{'type': 'output_text', 'text': text}]}]}


def make_client(response):
    session = MagicMock()
    session.post.return_value = response
    return ModelClient(api_key='sk-test', session=session), session


def test_decode_responses_api_message():
    decoded = decode_response(responses_body('{"a": 1}'))

    assert decoded == OutputMessage(text='{"a": 1}')


def test_decode_responses_api_text_value_object():
    data = {'output': [{'content': [{'type': 'output_text', 'text': {'value': 'hello'}}]}]}

    assert decode_response(data) == OutputMessage(text='hello')


def test_decode_top_level_output_text():
    assert decode_response({'output': [], 'output_text': 'x'}) == OutputText(text='x')


def test_decode_chat_completion():
    data = {'choices': [{'message': {'role': 'assistant', 'content': 'y'}}]}

    assert decode_response(data) == ChatCompletion(text='y')


def test_decode_unknown_shape():
    decoded = decode_response({'id': 'resp_1', 'status': 'incomplete'})

    assert isinstance(decoded, UnrecognizedShape)
    assert decoded.keys == ['id', 'status']


def test_extract_json_object_from_prose():
    text = 'Sure! Here it is:\n{"ir": {"name": "a}b"}, "files": {"x": "{"}}\nHope that helps {not json'

    block = extract_json_object(text)

    assert json.loads(block) == {'ir': {'name': 'a}b'}, 'files': {'x': '{'}}


def test_extract_json_object_handles_escaped_quotes():
    text = 'noise {"s": "say \\"hi\\" }"} tail'

    assert json.loads(extract_json_object(text)) == {'s': 'say "hi" }'}


def test_extract_json_object_none_when_unbalanced():
    assert extract_json_object('{"a": 1') is None
    assert extract_json_object('no braces here') is None


def test_parse_model_json_rejects_non_objects():
    with pytest.raises(MalformedOutputError):
        parse_model_json('[1, 2, 3]')
    with pytest.raises(MalformedOutputError):
        parse_model_json('I cannot do that')


def test_build_messages_trims_history_and_maps_roles():
    thread = [{'role': 'tool', 'content': 'old'}] + [
        {'role': 'assistant' if i % 2 else 'user', 'content': f'm{i}'} for i in range(20)
    ]

    messages = build_messages('todo app', thread, idea_id='idea-1')

    assert messages[0]['role'] == 'system'
    assert len(messages) == MAX_THREAD_MESSAGES + 2
    assert messages[1]['content'] == 'm8'
    assert all(m['role'] in ('system', 'user', 'assistant') for m in messages)
    assert messages[-1]['role'] == 'user'
    assert 'Idea ID: idea-1' in messages[-1]['content']
    assert 'todo app' in messages[-1]['content']


@pytest.mark.parametrize('idea', ['', '   ', '\n\t', None])
def test_generate_rejects_blank_idea_without_calling_model(idea, response):
    client, session = make_client(response(200, responses_body(json.dumps(BUNDLE))))

    with pytest.raises(InvalidRequestError):
        client.generate(idea)
    session.post.assert_not_called()


def test_generate_requires_api_key():
    client = ModelClient(session=MagicMock())

    with pytest.raises(ConfigError, match='OPENAI_API_KEY'):
        client.generate('todo app')


def test_generate_parses_bundle(response):
    client, session = make_client(response(200, responses_body(json.dumps(BUNDLE))))

    result = client.generate('todo app', thread=[{'role': 'user', 'content': 'hi'}])

    assert result.ir.name == 'Todo App'
    assert result.files['index.html'].startswith('<html>')
    url = session.post.call_args.args[0]
    payload = session.post.call_args.kwargs['json']
    assert url == 'https://api.openai.com/v1/responses'
    assert payload['model'] == 'gpt-4.1-mini'
    assert payload['text']['format']['type'] == 'json_schema'
    assert payload['input'][1] == {'role': 'user', 'content': 'hi'}


def test_generate_salvages_json_wrapped_in_markdown(response):
    text = 'Here you go:\n```json\n' + json.dumps(BUNDLE) + '\n```'
    client, _ = make_client(response(200, {'output_text': text}))

    result = client.generate('todo app')

    assert result.ir.app_type == 'spa'


def test_generate_upstream_error_embeds_status(response):
    client, _ = make_client(response(429, {'error': {'message': 'rate limited'}}, text='rate limited'))

    with pytest.raises(UpstreamError) as exc:
        client.generate('todo app')

    assert exc.value.upstream_status == 429
    assert 'rate limited' in exc.value.message
    assert exc.value.status_code == 502


def test_generate_network_error_is_upstream_error():
    client, session = make_client(None)
    session.post.side_effect = requests.exceptions.ConnectionError('model host unreachable')

    with pytest.raises(UpstreamError) as exc:
        client.generate('todo app')

    assert 'model host unreachable' in exc.value.message
    assert exc.value.upstream_status is None
    assert exc.value.endpoint.endswith('/responses')
    assert exc.value.status_code == 502


def test_generate_unrecognized_shape_is_malformed(response):
    client, _ = make_client(response(200, {'id': 'resp_1'}))

    with pytest.raises(MalformedOutputError, match='Unrecognized'):
        client.generate('todo app')


def test_generate_non_json_body_is_malformed(response):
    client, _ = make_client(response(200, None, text='<html>bad gateway</html>'))

    with pytest.raises(MalformedOutputError):
        client.generate('todo app')


def test_generate_empty_files_is_malformed(response):
    body = dict(BUNDLE, files={})
    client, _ = make_client(response(200, responses_body(json.dumps(body))))

    with pytest.raises(MalformedOutputError, match='empty file bundle'):
        client.generate('todo app')


def test_env_overrides_model_and_base_url(monkeypatch, response):
    monkeypatch.setenv('OPENAI_API_KEY', 'sk-env')
    monkeypatch.setenv('OPENAI_MODEL', 'gpt-test')
    monkeypatch.setenv('OPENAI_BASE_URL', 'https://proxy.example/v1/')
    session = MagicMock()
    session.post.return_value = response(200, responses_body(json.dumps(BUNDLE)))

    ModelClient(session=session).generate('todo app')

    assert session.post.call_args.args[0] == 'https://proxy.example/v1/responses'
    assert session.post.call_args.kwargs['json']['model'] == 'gpt-test'
    assert session.post.call_args.kwargs['headers']['Authorization'] == 'Bearer sk-env'
