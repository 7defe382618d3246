"""Terminal chat client for the orchestrator.

Threads live only in this process. Every idea is sent to ``/mvp`` together
with the recent history of the active thread, and the reply is printed with a
simulated token-by-token effect. ``/build`` and ``/export`` act on the last
bundle generated in the thread.
"""
import argparse
import logging
import random
import sys
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import requests

from config import http_timeout

logger = logging.getLogger('chat-client')

MAX_HISTORY = 12
GREETING = "Hi! Describe the app you want and I'll draft a plan. Type /help for commands."
HELP = (
    "Commands:\n"
    "  /build [worker|pages]  deploy the last generated bundle to a sandbox\n"
    "  /export <repo-name>    push the last generated bundle to GitHub\n"
    "  /new                   start a new thread\n"
    "  /threads               list threads\n"
    "  /switch <n>            switch to thread n\n"
    "  /quit                  exit"
)


@dataclass
class Thread:
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    title: str = ''
    messages: List[Dict[str, str]] = field(default_factory=list)
    last_idea: Optional[str] = None
    last_files: Optional[Dict[str, str]] = None
    last_name: Optional[str] = None

    def add(self, role: str, content: str) -> None:
        self.messages.append({'role': role, 'content': content})

    def history(self) -> List[Dict[str, str]]:
        return self.messages[-MAX_HISTORY:]


def build_assistant_markdown(data: dict) -> str:
    if not data or not data.get('ok') or not data.get('result'):
        return '**Error:** ' + str((data or {}).get('error') or 'unknown error')
    result = data['result']
    ir = result.get('ir') or {}
    files = result.get('files') or {}
    smoke = result.get('smoke') or {}

    routes = ', '.join(f"{r.get('method')} {r.get('path')}" for r in ir.get('api_routes') or []) or '-'
    pages = ', '.join(ir.get('pages') or []) or '-'

    s = '### Plan created\n'
    s += f"**App:** {ir.get('name') or 'Generated App'}  \n"
    s += f"**Type:** {ir.get('app_type') or 'spa_api'}\n\n"
    s += f'**Pages:** {pages}  \n'
    s += f'**API Routes:** {routes}\n\n'
    s += f'**Files generated:** {len(files)}\n\n'
    s += '### Smoke\n'
    s += f"- Passed: **{'yes' if smoke.get('passed') else 'no'}**\n"
    if smoke.get('logs'):
        s += '```\n' + '\n'.join(smoke['logs']) + '\n```\n'
    s += '\n> Next: /build to deploy, /export <repo> to push to GitHub, or keep refining the idea.'
    return s


def build_deploy_markdown(data: dict) -> str:
    if data.get('ok'):
        return f"**Deployed.**\n- App URL: {data.get('url') or '(no public URL configured)'}\n- Name: {data.get('name')}"
    if data.get('url'):
        return f"**Deployed, not serving yet.** {data.get('error') or ''}\n- App URL: {data['url']}"
    return '**Deploy failed:** ' + str(data.get('error') or 'unknown error')


def stream_text(text: str, write: Callable[[str], None], sleep: Callable[[float], None] = time.sleep,
                rng: Optional[random.Random] = None, delay: float = 0.025) -> None:
    """Reveal ``text`` in 30-60 character steps. Presentation only."""
    rng = rng or random.Random()
    i = 0
    while i < len(text):
        step = 30 + rng.randint(0, 30)
        write(text[i:i + step])
        i += step
        sleep(delay)
    write('\n')


class ChatSession:
    def __init__(self, base_url: str, session: requests.Session = None,
                 write: Callable[[str], None] = None, sleep: Callable[[float], None] = time.sleep):
        self.base_url = base_url.rstrip('/')
        self.session = session or requests.Session()
        self.write = write or self._stdout
        self.sleep = sleep
        self.threads: List[Thread] = [Thread()]
        self.active = 0

    @staticmethod
    def _stdout(s: str) -> None:
        sys.stdout.write(s)
        sys.stdout.flush()

    @property
    def thread(self) -> Thread:
        return self.threads[self.active]

    def _post(self, path: str, body: dict) -> dict:
        r = self.session.post(self.base_url + path, json=body, timeout=max(http_timeout(), 120))
        try:
            data = r.json()
        except ValueError:
            r.raise_for_status()
            raise RuntimeError(f'HTTP {r.status_code}: non-JSON response')
        if not isinstance(data, dict):
            raise RuntimeError(f'HTTP {r.status_code}: unexpected response')
        return data

    def _reply(self, content: str) -> str:
        self.thread.add('assistant', content)
        stream_text(content, self.write, sleep=self.sleep)
        return content

    def send(self, text: str) -> Optional[str]:
        text = text.strip()
        if not text:
            return None
        cmd, _, arg = text.partition(' ')
        cmd = cmd.lower()
        if cmd == '/help':
            return self._reply(HELP)
        if cmd == '/new':
            self.threads.append(Thread())
            self.active = len(self.threads) - 1
            return self._reply(f'Started thread {self.active + 1}. ' + GREETING)
        if cmd == '/threads':
            lines = [f"{'*' if i == self.active else ' '} {i + 1}. {t.title or '(untitled)'}"
                     for i, t in enumerate(self.threads)]
            self.write('\n'.join(lines) + '\n')
            return None
        if cmd == '/switch':
            try:
                n = int(arg) - 1
                if not 0 <= n < len(self.threads):
                    raise ValueError(arg)
            except ValueError:
                self.write(f'No such thread: {arg}\n')
                return None
            self.active = n
            self.write(f'Switched to thread {n + 1}.\n')
            return None
        if cmd == '/build':
            return self.build(arg.strip() or None)
        if cmd == '/export':
            return self.export(arg.strip())
        return self.ask(text)

    def ask(self, idea: str) -> str:
        thread = self.thread
        history = thread.history()
        thread.add('user', idea)
        if not thread.title:
            thread.title = idea[:40]
        try:
            data = self._post('/mvp', {'idea': idea, 'ideaId': thread.id, 'thread': history})
        except (requests.exceptions.RequestException, RuntimeError) as e:
            logger.debug('mvp request failed', exc_info=True)
            return self._reply(f'**Request failed:** {e}')
        if data.get('ok') and data.get('result'):
            thread.last_idea = idea
            thread.last_files = data['result'].get('files') or {}
            thread.last_name = (data['result'].get('ir') or {}).get('name')
        return self._reply(build_assistant_markdown(data))

    def build(self, mode: Optional[str] = None) -> str:
        thread = self.thread
        if not thread.last_files and not thread.last_idea:
            return self._reply('Nothing to build yet: describe an idea first.')
        body = {'confirm': True, 'name': thread.last_name}
        if mode:
            body['mode'] = mode
        if thread.last_files:
            body['files'] = thread.last_files
        else:
            body['idea'] = thread.last_idea
        self.write('Starting build & deploy...\n')
        try:
            data = self._post('/sandbox-deploy', body)
        except (requests.exceptions.RequestException, RuntimeError) as e:
            return self._reply(f'**Deploy failed:** {e}')
        return self._reply(build_deploy_markdown(data))

    def export(self, repo_name: str) -> str:
        thread = self.thread
        if not repo_name:
            return self._reply('Usage: /export <repo-name>')
        if not thread.last_files:
            return self._reply('Nothing to export yet: describe an idea first.')
        try:
            data = self._post('/github-export', {'repoName': repo_name, 'files': thread.last_files})
        except (requests.exceptions.RequestException, RuntimeError) as e:
            return self._reply(f'**Export failed:** {e}')
        if data.get('ok'):
            return self._reply(f"**Exported.** Repo: {data.get('repoUrl')}")
        return self._reply('**Export failed:** ' + str(data.get('error') or 'unknown error'))


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description='Chat with the sandbox orchestrator.')
    parser.add_argument('--url', default='http://localhost:8000', help='orchestrator base URL')
    parser.add_argument('--verbose', action='store_true')
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    chat = ChatSession(args.url)
    stream_text(GREETING, chat.write)
    while True:
        try:
            line = input('> ')
        except (EOFError, KeyboardInterrupt):
            chat.write('\n')
            return 0
        if line.strip().lower() in ('/quit', '/exit'):
            return 0
        chat.send(line)


if __name__ == '__main__':
    sys.exit(main())
