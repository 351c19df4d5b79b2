from __future__ import annotations

from typing import Any, Awaitable, Callable

from langgraph.graph import END, START, StateGraph
from langgraph.types import StreamWriter
from loguru import logger

from storyloom.pipeline.context import AppContext
from storyloom.pipeline.errors import PipelineAborted
from storyloom.pipeline.phases import (
    classification,
    image,
    narrative,
    post_generation,
    pre_generation,
    retrieval,
    translation,
)
from storyloom.pipeline.state import TurnState
from storyloom.pipeline.types import (
    CLASSIFICATION,
    FATAL_PHASES,
    IMAGE,
    NARRATIVE,
    POST_GENERATION,
    PRE_GENERATION,
    RETRIEVAL,
    TRANSLATION,
    ClassificationPhaseResult,
    ImagePhaseResult,
    PhaseCompleted,
    PhaseError,
    PhaseStarted,
    RetrievalPhaseResult,
    TranslationResult,
    TurnAborted,
    TurnInput,
)

PhaseRunner = Callable[..., Awaitable[dict]]

_PHASE_RUNNERS: tuple[tuple[str, PhaseRunner], ...] = (
    (PRE_GENERATION, pre_generation.run),
    (RETRIEVAL, retrieval.run),
    (NARRATIVE, narrative.run),
    (CLASSIFICATION, classification.run),
    (TRANSLATION, translation.run),
    (IMAGE, image.run),
    (POST_GENERATION, post_generation.run),
)

_DEGRADED_RESULTS: dict[str, Callable[..., Any]] = {
    RETRIEVAL: RetrievalPhaseResult,
    CLASSIFICATION: ClassificationPhaseResult,
    TRANSLATION: TranslationResult,
    IMAGE: ImagePhaseResult,
}


def _phase_node(ctx: AppContext, turn: TurnInput, phase: str, runner: PhaseRunner):
    async def _node(state: TurnState, writer: StreamWriter) -> dict:
        log = logger.bind(phase=phase, story_id=turn.story_id, branch_id=turn.branch_id)
        signal = turn.signal
        if signal is not None and signal.aborted:
            log.info("Turn aborted before phase start")
            writer(TurnAborted(phase=phase, reason=signal.reason))
            return {"aborted": True, "abort_reason": signal.reason, "aborted_phase": phase}

        writer(PhaseStarted(phase=phase))
        try:
            update = await runner(state, ctx=ctx, turn=turn, writer=writer)
        except PipelineAborted as exc:
            log.info("Turn aborted during phase")
            writer(TurnAborted(phase=phase, reason=exc.reason))
            return {"aborted": True, "abort_reason": exc.reason, "aborted_phase": phase}
        except Exception as exc:  # noqa: BLE001
            message = str(exc) or type(exc).__name__
            if phase in FATAL_PHASES:
                log.opt(exception=exc).error("Fatal phase failure: {}", message)
                writer(PhaseError(phase=phase, error=message, fatal=True))
                return {"fatal_error": message, "fatal_phase": phase}
            log.warning("Phase failed; continuing with defaults: {}", message)
            writer(PhaseError(phase=phase, error=message, fatal=False))
            writer(PhaseCompleted(phase=phase))
            return {phase: _DEGRADED_RESULTS[phase](error=message)}

        result = update.get(phase)
        error = getattr(result, "error", None) or getattr(result, "suggestions_error", None)
        if error:
            writer(PhaseError(phase=phase, error=error, fatal=False))
        writer(PhaseCompleted(phase=phase, skipped_reason=getattr(result, "skipped_reason", None)))
        return update

    _node.__name__ = f"_{phase}"
    return _node


def _route(state: TurnState) -> str:
    if state.get("aborted") or state.get("fatal_error"):
        return "stop"
    return "continue"


def build_turn_graph(ctx: AppContext, turn: TurnInput):
    """Compile the fixed, linear phase graph for one turn."""

    workflow = StateGraph(TurnState)
    names: list[str] = []
    for phase, runner in _PHASE_RUNNERS:
        # Node names must differ from state keys.
        name = f"{phase}_phase"
        workflow.add_node(name, _phase_node(ctx, turn, phase, runner))
        names.append(name)

    workflow.add_edge(START, names[0])
    for current, following in zip(names, names[1:]):
        workflow.add_conditional_edges(current, _route, {"continue": following, "stop": END})
    workflow.add_edge(names[-1], END)

    return workflow.compile()
