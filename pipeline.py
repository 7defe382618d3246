import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ai_client import ModelClient
from bundle import IR, MAX_BYTES, MAX_FILES, MvpResult, Smoke, apply_guardrails, bundle_stats, repair_bundle, run_smoke
from config import env_int, orchestrator_url

logger = logging.getLogger('pipeline')


@dataclass
class GenerationContext:
    """Everything one generation request carries between stages.

    Lives for a single request; nothing is kept once the response is sent.
    """

    idea: str
    idea_id: Optional[str] = None
    thread: List[Any] = field(default_factory=list)
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    ir: Optional[IR] = None
    files: Dict[str, str] = field(default_factory=dict)
    smoke: Optional[Smoke] = None
    logs: List[str] = field(default_factory=list)

    def result(self) -> MvpResult:
        return MvpResult(ir=self.ir, files=self.files, smoke=self.smoke or Smoke())


def run_generation(
    ctx: GenerationContext,
    client: Optional[ModelClient] = None,
    proxy_target: Optional[str] = None,
    max_files: Optional[int] = None,
    max_bytes: Optional[int] = None,
) -> MvpResult:
    client = client or ModelClient()
    max_files = max_files if max_files is not None else env_int('MAX_FILES', MAX_FILES)
    max_bytes = max_bytes if max_bytes is not None else env_int('MAX_BYTES', MAX_BYTES)

    logger.info('[%s] generating bundle for idea=%r', ctx.request_id, ctx.idea[:120])
    generated = client.generate(ctx.idea, thread=ctx.thread, idea_id=ctx.idea_id)
    ctx.ir = generated.ir
    ctx.files = apply_guardrails(generated.files, max_files, max_bytes)

    ctx.files, repair_logs = repair_bundle(ctx.ir, ctx.files, proxy_target or orchestrator_url())
    ctx.logs.extend(repair_logs)
    # guardrails run last so the returned bundle always respects the caps
    ctx.files = apply_guardrails(ctx.files, max_files, max_bytes)

    ctx.smoke = run_smoke(ctx.files)
    ctx.smoke.logs = ctx.logs + ctx.smoke.logs
    count, total = bundle_stats(ctx.files)
    logger.info('[%s] generated %r: %d file(s), %d bytes', ctx.request_id, ctx.ir.name, count, total)
    return ctx.result()
