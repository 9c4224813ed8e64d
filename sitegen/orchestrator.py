from __future__ import annotations

import asyncio
import copy
import logging
import time
import uuid
from contextlib import suppress
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from sitegen import config, prompts
from sitegen.cancel import CancelToken
from sitegen.errors import FallbackExhaustedError, GenerationError, SchemaValidationError, describe
from sitegen.llm_parsing import detect_payload_type, extract_payload
from sitegen.normalizer import normalize
from sitegen.providers import Message, ProviderClient, Usage, estimate_tokens
from sitegen.registry import ComponentCatalog, compose_tree
from sitegen.retry import RetryPolicy
from sitegen.router import CircuitBreaker, CompletionAttempt, FallbackRouter, FallbackTracker, select_models
from sitegen.schemas import default_global_styles, utc_now_iso
from sitegen.streaming import StreamAssembler
from sitegen.usage import LoggingUsageSink, UsageRecord, UsageSink
from sitegen.validators import (
    CONTEXT_SCHEMA,
    SITE_SCHEMA,
    STYLES_SCHEMA,
    TREE_SCHEMA,
    RepairValidator,
    Schema,
    ValidationIssue,
    ValidationReport,
    quality_findings,
)

log = logging.getLogger(__name__)


class Stage(str, Enum):
    CONTEXT_ANALYSIS = "context_analysis"
    STRUCTURE_GENERATION = "structure_generation"
    CONTENT_GENERATION = "content_generation"
    DESIGN_SYSTEM = "design_system"
    OPTIMIZATION = "optimization"
    COMPLETE = "complete"
    ERROR = "error"


STAGE_PERCENT: Dict[Stage, int] = {
    Stage.CONTEXT_ANALYSIS: 10,
    Stage.STRUCTURE_GENERATION: 30,
    Stage.CONTENT_GENERATION: 50,
    Stage.DESIGN_SYSTEM: 70,
    Stage.OPTIMIZATION: 85,
    Stage.COMPLETE: 100,
}

STAGE_MESSAGES: Dict[Stage, str] = {
    Stage.CONTEXT_ANALYSIS: "Analyzing your requirements",
    Stage.STRUCTURE_GENERATION: "Generating site structure",
    Stage.CONTENT_GENERATION: "Writing page content",
    Stage.DESIGN_SYSTEM: "Creating design system",
    Stage.OPTIMIZATION: "Assembling and validating the site",
    Stage.COMPLETE: "Generation complete",
}


def _new_generation_id() -> str:
    return f"gen_{uuid.uuid4().hex[:12]}"


@dataclass
class GenerationRequest:
    prompt: str
    priority: Optional[str] = None
    model: Optional[str] = None
    strict: bool = False
    stream: bool = False
    industry: Optional[str] = None
    generation_id: str = field(default_factory=_new_generation_id)


@dataclass
class ProgressEvent:
    stage: Stage
    percent: int
    message: str
    partial: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"stage": self.stage.value, "percent": self.percent, "message": self.message}
        if self.partial is not None:
            out["partial"] = self.partial
        return out


@dataclass
class GenerationResult:
    payload: Optional[Dict[str, Any]]
    issues: List[ValidationIssue]
    metadata: Dict[str, Any]
    stage: Stage
    error: Optional[Dict[str, Any]] = None

    @property
    def success(self) -> bool:
        return self.payload is not None and self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "stage": self.stage.value,
            "payload": self.payload,
            "issues": [i.to_dict() for i in self.issues],
            "metadata": self.metadata,
            "error": self.error,
        }


ChannelItem = Union[ProgressEvent, GenerationResult]
_CLOSED = object()


class ProgressChannel:
    """Bounded, ordered hand-off from the generation task to its consumer."""

    def __init__(self, maxsize: int = 32):
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue(maxsize=maxsize)

    async def put(self, item: ChannelItem) -> None:
        await self._queue.put(item)

    async def close(self) -> None:
        await self._queue.put(_CLOSED)

    def __aiter__(self) -> "ProgressChannel":
        return self

    async def __anext__(self) -> ChannelItem:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


def merge_under(defaults: Any, data: Any) -> Any:
    """Deep-merge `data` over `defaults`; values from `data` win, lists are replaced."""
    if not isinstance(defaults, dict) or not isinstance(data, dict):
        return copy.deepcopy(defaults) if data is None else data
    out = copy.deepcopy(defaults)
    for key, value in data.items():
        out[key] = merge_under(out.get(key), value) if isinstance(out.get(key), dict) else value
    return out


def _under_page(index: int, issue: ValidationIssue) -> ValidationIssue:
    """Re-anchor a component-tree issue path at its page in the site payload."""
    base = f"pages[{index}].components"
    if issue.path in ("", "(root)"):
        return replace(issue, path=base)
    sep = "" if issue.path.startswith("[") else "."
    return replace(issue, path=f"{base}{sep}{issue.path}")


@dataclass
class _Run:
    """Mutable per-request telemetry; never shared between requests."""

    request: GenerationRequest
    started: float = field(default_factory=time.monotonic)
    stage: Stage = Stage.CONTEXT_ANALYSIS
    cost: float = 0.0
    usage: Usage = field(default_factory=Usage)
    attempted_log: List[str] = field(default_factory=list)
    attempts: List[Dict[str, Any]] = field(default_factory=list)
    issues: List[ValidationIssue] = field(default_factory=list)
    stage_models: Dict[str, str] = field(default_factory=dict)
    fallback_used: bool = False
    context: Dict[str, Any] = field(default_factory=dict)
    quality: Optional[Dict[str, Any]] = None

    def add_usage(self, model: str, usage: Usage, charge: bool = True) -> None:
        self.usage = Usage(
            self.usage.prompt_tokens + usage.prompt_tokens,
            self.usage.completion_tokens + usage.completion_tokens,
            self.usage.total_tokens + usage.total_tokens,
        )
        if charge:
            self.cost += config.calculate_cost(model, usage.prompt_tokens, usage.completion_tokens)

    @property
    def attempted_models(self) -> List[str]:
        seen: List[str] = []
        for model in self.attempted_log:
            if model not in seen:
                seen.append(model)
        return seen

    def metadata(self) -> Dict[str, Any]:
        return {
            "generationId": self.request.generation_id,
            "model": self.stage_models.get(Stage.STRUCTURE_GENERATION.value),
            "stageModels": dict(self.stage_models),
            "totalCost": round(self.cost, 6),
            "tokenUsage": self.usage.to_dict(),
            "totalTime": round(time.monotonic() - self.started, 3),
            "attemptedModels": self.attempted_models,
            "fallbackUsed": self.fallback_used,
            "attempts": list(self.attempts),
            "quality": self.quality,
        }


class Orchestrator:
    """Runs the staged prompt-to-site pipeline for one request at a time."""

    def __init__(
        self,
        provider: ProviderClient,
        catalog: Optional[ComponentCatalog] = None,
        usage_sink: Optional[UsageSink] = None,
        tracker: Optional[FallbackTracker] = None,
        policy: Optional[RetryPolicy] = None,
        attempt_timeout: Optional[float] = None,
        breaker: Optional[CircuitBreaker] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        channel_size: int = 32,
    ):
        self.provider = provider
        self.catalog = catalog
        self.usage_sink = usage_sink or LoggingUsageSink()
        self.tracker = tracker
        self.router = FallbackRouter(policy, attempt_timeout, tracker=tracker, breaker=breaker, sleep=sleep)
        self.channel_size = channel_size

    # -- public API ---------------------------------------------------------

    async def events(self, request: GenerationRequest, cancel: Optional[CancelToken] = None) -> AsyncIterator[ChannelItem]:
        """Yield ProgressEvents in stage order, then exactly one GenerationResult."""
        channel = ProgressChannel(self.channel_size)
        producer = asyncio.create_task(self._produce(request, cancel, channel))
        try:
            async for item in channel:
                yield item
            await producer
        finally:
            if not producer.done():
                producer.cancel()
                with suppress(asyncio.CancelledError):
                    await producer

    async def generate(self, request: GenerationRequest, cancel: Optional[CancelToken] = None) -> GenerationResult:
        result: Optional[GenerationResult] = None
        async for item in self.events(request, cancel):
            if isinstance(item, GenerationResult):
                result = item
        if result is None:
            raise GenerationError(f"generation {request.generation_id} produced no result")
        return result

    async def generate_images(
        self, prompt: str, size: str = "1024x1024", quality: str = "standard", n: int = 1, model: Optional[str] = None
    ) -> Tuple[Any, List[str]]:
        selection = select_models("images", override=model)
        attempted: List[str] = []

        async def work(m: str) -> Any:
            return await self.provider.generate_image(prompt, m, size=size, quality=quality, n=n)

        outcome = await self.router.run(selection, work, attempted_log=attempted)
        return outcome.value, outcome.attempted

    # -- pipeline -----------------------------------------------------------

    async def _enter(self, run: _Run, stage: Stage, channel: ProgressChannel, cancel: Optional[CancelToken]) -> None:
        run.stage = stage
        log.info("stage.start generation=%s stage=%s", run.request.generation_id, stage.value)
        await channel.put(ProgressEvent(stage, STAGE_PERCENT[stage], STAGE_MESSAGES[stage]))
        if cancel is not None:
            cancel.raise_if_cancelled()

    async def _produce(self, request: GenerationRequest, cancel: Optional[CancelToken], channel: ProgressChannel) -> None:
        run = _Run(request)
        result: Optional[GenerationResult] = None
        try:
            result = await self._pipeline(run, cancel, channel)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.exception("generation.finalize_failed generation=%s stage=%s", request.generation_id, run.stage.value)
            metadata = {"generationId": request.generation_id, "failedStage": run.stage.value}
            result = GenerationResult(None, list(run.issues), metadata, Stage.ERROR, describe(exc))
        finally:
            # Consumers wait on the channel until it is closed
            if result is not None:
                await channel.put(result)
                await channel.close()

    async def _pipeline(self, run: _Run, cancel: Optional[CancelToken], channel: ProgressChannel) -> GenerationResult:
        request = run.request
        payload: Optional[Dict[str, Any]] = None
        error: Optional[Dict[str, Any]] = None
        try:
            await self._enter(run, Stage.CONTEXT_ANALYSIS, channel, cancel)
            run.context = await self._context_analysis(run, cancel)

            await self._enter(run, Stage.STRUCTURE_GENERATION, channel, cancel)
            site = await self._structure_generation(run, cancel, channel)

            await self._enter(run, Stage.CONTENT_GENERATION, channel, cancel)
            site = await self._content_generation(run, site, cancel)

            await self._enter(run, Stage.DESIGN_SYSTEM, channel, cancel)
            styles = await self._design_system(run, cancel)

            await self._enter(run, Stage.OPTIMIZATION, channel, cancel)
            payload = self._assemble(run, site, styles)

            run.stage = Stage.COMPLETE
            await channel.put(ProgressEvent(Stage.COMPLETE, STAGE_PERCENT[Stage.COMPLETE], STAGE_MESSAGES[Stage.COMPLETE]))
        except GenerationError as exc:
            error = describe(exc)
            if isinstance(exc, FallbackExhaustedError) and len(exc.attempted) > 1:
                run.fallback_used = True
            log.error("generation.failed generation=%s stage=%s err=%s", request.generation_id, run.stage.value, exc)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = describe(exc)
            log.exception("generation.crashed generation=%s stage=%s", request.generation_id, run.stage.value)

        failed_stage = run.stage
        if error is not None:
            payload = None
            run.stage = Stage.ERROR
            await channel.put(ProgressEvent(Stage.ERROR, STAGE_PERCENT.get(failed_stage, 0), error["message"]))

        metadata = run.metadata()
        if error is not None:
            metadata["failedStage"] = failed_stage.value
        self._record_usage(run, error is None)
        return GenerationResult(payload, list(run.issues), metadata, run.stage, error)

    def _record_usage(self, run: _Run, success: bool) -> None:
        record = UsageRecord(
            generation_id=run.request.generation_id,
            success=success,
            cost=run.cost,
            tokens=run.usage.total_tokens,
            duration=time.monotonic() - run.started,
            models=run.attempted_models,
            fallback_used=run.fallback_used,
        )
        try:
            self.usage_sink.record(record)
        except Exception as exc:
            log.warning("usage.record failed generation=%s err=%r", run.request.generation_id, exc)

    # -- one routed, validated model call ------------------------------------

    async def _complete_text(
        self, run: _Run, model: str, messages: List[Message], stage: Stage, task: str, stream: bool, channel: Optional[ProgressChannel], cancel: Optional[CancelToken]
    ) -> Dict[str, Any]:
        meta = {"stage": stage.value, "task": task, "generation_id": run.request.generation_id}
        if not stream:
            completion = await self.provider.complete(model, messages, metadata=meta)
            # Cache hits count tokens but cost nothing
            run.add_usage(model, completion.usage, charge=not completion.cached)
            return extract_payload(completion.text, model)

        assembler = StreamAssembler(model, cancel=cancel)
        prompt_tokens = estimate_tokens("".join(m["content"] for m in messages))
        payload: Dict[str, Any] = {}
        try:
            async for ev in assembler.events(self.provider.stream(model, messages, metadata=meta)):
                if ev.kind == "partial" and channel is not None:
                    percent = STAGE_PERCENT[stage] + int(ev.progress * 20 / 80)
                    await channel.put(ProgressEvent(stage, percent, f"Receiving structure ({ev.confidence}% complete)", ev.partial))
                elif ev.kind == "complete" and ev.payload is not None:
                    payload = ev.payload
        finally:
            completion_tokens = assembler.buffer.tokens
            run.add_usage(model, Usage(prompt_tokens, completion_tokens, prompt_tokens + completion_tokens))
        return payload

    def _shape(
        self,
        run: _Run,
        data: Dict[str, Any],
        model: str,
        schema: Schema,
        stage: Stage,
        defaults: Optional[Dict[str, Any]] = None,
    ) -> ValidationReport:
        normalized = normalize(data, model, kind=schema.kind)
        if defaults:
            normalized = merge_under(defaults, normalized)
        report = RepairValidator(strict=run.request.strict).validate(normalized, schema, model=model, stage=stage.value)
        if not report.valid and run.request.strict:
            raise SchemaValidationError(
                f"{schema.name} from {model} failed validation after repair ({len(report.issues)} issues)",
                issues=[i.to_dict() for i in report.issues],
                model=model,
            )
        return report

    async def _routed(
        self,
        run: _Run,
        stage: Stage,
        task: str,
        messages: List[Message],
        shape: Callable[[Dict[str, Any], str], ValidationReport],
        cancel: Optional[CancelToken],
        priority: Optional[str] = None,
        stream: bool = False,
        channel: Optional[ProgressChannel] = None,
        commit_issues: bool = True,
    ) -> ValidationReport:
        selection = select_models(task, override=run.request.model, priority=priority or run.request.priority, context=run.context)
        log.info("stage.route stage=%s task=%s models=%s (%s)", stage.value, task, selection.models, selection.reasoning)

        async def work(model: str) -> ValidationReport:
            start = time.monotonic()
            try:
                data = await self._complete_text(run, model, messages, stage, task, stream, channel, cancel)
                report = shape(data, model)
            except Exception as exc:
                attempt = CompletionAttempt(model, False, time.monotonic() - start, f"{type(exc).__name__}: {exc}", getattr(exc, "code", None))
                run.attempts.append({"stage": stage.value, **attempt.to_dict()})
                raise
            run.attempts.append({"stage": stage.value, **CompletionAttempt(model, True, time.monotonic() - start).to_dict()})
            return report

        outcome = await self.router.run(selection, work, attempted_log=run.attempted_log, cancel=cancel)
        if outcome.fallback_used:
            run.fallback_used = True
        run.stage_models[stage.value] = outcome.model
        if commit_issues:
            run.issues.extend(outcome.value.issues)
        return outcome.value

    # -- stages -------------------------------------------------------------

    async def _context_analysis(self, run: _Run, cancel: Optional[CancelToken]) -> Dict[str, Any]:
        heuristic = prompts.heuristic_context(run.request.prompt)
        if run.request.industry:
            heuristic["industry"] = run.request.industry
        messages = prompts.stage_messages("analysis", Stage.CONTEXT_ANALYSIS.value, prompt=run.request.prompt)
        report = await self._routed(
            run,
            Stage.CONTEXT_ANALYSIS,
            "analysis",
            messages,
            lambda data, model: self._shape(run, data, model, CONTEXT_SCHEMA, Stage.CONTEXT_ANALYSIS, heuristic),
            cancel,
        )
        context = dict(report.data)
        if run.request.industry:
            context["industry"] = run.request.industry
        return context

    async def _structure_generation(self, run: _Run, cancel: Optional[CancelToken], channel: ProgressChannel) -> Dict[str, Any]:
        industry = run.context.get("industry") or "general"
        messages = prompts.stage_messages(
            "structure",
            Stage.STRUCTURE_GENERATION.value,
            context=run.context,
            template=industry,
            enhancement=prompts.enhancement_for(industry),
        )
        report = await self._routed(
            run,
            Stage.STRUCTURE_GENERATION,
            "structure",
            messages,
            lambda data, model: self._shape(run, data, model, SITE_SCHEMA, Stage.STRUCTURE_GENERATION),
            cancel,
            stream=run.request.stream,
            channel=channel,
        )
        return copy.deepcopy(report.data)

    async def _page_content(self, run: _Run, page: Dict[str, Any], cancel: Optional[CancelToken]) -> ValidationReport:
        existing = page.get("components") if isinstance(page.get("components"), dict) else None
        messages = prompts.stage_messages(
            "content",
            Stage.CONTENT_GENERATION.value,
            context=run.context,
            page={"name": page.get("name", ""), "path": page.get("path", "")},
            structure=existing or {},
            catalog=self.catalog is not None,
        )
        prefix = f"{page.get('id') or 'page'}_"

        def shape(data: Dict[str, Any], model: str) -> ValidationReport:
            skipped: List[str] = []
            if detect_payload_type(data) == "selection" and self.catalog is not None:
                data, skipped = compose_tree(data, self.catalog, model, prefix=prefix)
            report = self._shape(run, data, model, TREE_SCHEMA, Stage.CONTENT_GENERATION, existing)
            # Only the accepted attempt's warnings reach the result
            warnings = [
                ValidationIssue("warning", where, "Unknown registry component skipped", stage=Stage.CONTENT_GENERATION.value)
                for where in skipped
            ]
            report.issues = warnings + report.issues
            return report

        return await self._routed(run, Stage.CONTENT_GENERATION, "content", messages, shape, cancel, commit_issues=False)

    async def _content_generation(self, run: _Run, site: Dict[str, Any], cancel: Optional[CancelToken]) -> Dict[str, Any]:
        indexed = [(i, p) for i, p in enumerate(site.get("pages") or []) if isinstance(p, dict)]
        if not indexed:
            return site
        results = await asyncio.gather(*(self._page_content(run, p, cancel) for _, p in indexed), return_exceptions=True)
        # First failure in page order wins
        for result in results:
            if isinstance(result, BaseException):
                raise result
        for (index, _), report in zip(indexed, results):
            run.issues.extend(_under_page(index, issue) for issue in report.issues)
        out = dict(site)
        out["pages"] = [{**page, "components": report.data} for (_, page), report in zip(indexed, results)]
        return out

    async def _design_system(self, run: _Run, cancel: Optional[CancelToken]) -> Dict[str, Any]:
        messages = prompts.stage_messages(
            "simple",
            Stage.DESIGN_SYSTEM.value,
            industry=run.context.get("industry") or "general",
            style=run.context.get("style") or "modern",
        )
        report = await self._routed(
            run,
            Stage.DESIGN_SYSTEM,
            "simple",
            messages,
            lambda data, model: self._shape(run, data, model, STYLES_SCHEMA, Stage.DESIGN_SYSTEM, default_global_styles()),
            cancel,
            priority="speed",
        )
        return report.data

    def _assemble(self, run: _Run, site: Dict[str, Any], styles: Dict[str, Any]) -> Dict[str, Any]:
        out = copy.deepcopy(site)
        out["globalStyles"] = styles
        metadata = dict(out.get("metadata") or {})
        metadata["updatedAt"] = utc_now_iso()
        if run.context.get("industry"):
            metadata["industry"] = run.context["industry"]
        out["metadata"] = metadata

        keywords = list(run.context.get("keywords") or [])[:5]
        site_name = str(out.get("name") or "")
        for page in out.get("pages") or []:
            seo = dict(page.get("seo") or {})
            if not seo.get("title"):
                seo["title"] = f"{page.get('name', '')} | {site_name}".strip(" |")
            if not seo.get("description"):
                seo["description"] = f"{site_name}: {page.get('name', '')} for {run.context.get('audience', 'everyone')}"
            if not seo.get("keywords") and keywords:
                seo["keywords"] = keywords
            page["seo"] = seo

        navigation = dict(out.get("navigation") or {})
        if not navigation.get("main"):
            navigation["main"] = [{"label": p.get("name"), "path": p.get("path")} for p in out.get("pages") or []]
        out["navigation"] = navigation

        report = RepairValidator(strict=run.request.strict).validate(out, SITE_SCHEMA, stage=Stage.OPTIMIZATION.value)
        run.issues.extend(report.issues)
        if not report.valid and run.request.strict:
            raise SchemaValidationError(
                f"Assembled site failed validation ({len(report.issues)} issues)",
                issues=[i.to_dict() for i in report.issues],
            )
        run.quality = quality_findings(report.data)
        log.info("stage.assembled generation=%s quality=%d", run.request.generation_id, run.quality["score"])
        return report.data
