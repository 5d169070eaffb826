"""Stage catalogue and per-kind progress weights."""

from __future__ import annotations

from media_tasks.orchestrator.errors import ValidationError
from media_tasks.orchestrator.models import TaskKind

STAGE_INFO = "info"
STAGE_TRANSFER = "transfer"
STAGE_MERGE = "merge"
STAGE_CAPTION = "caption"
STAGE_TRANSLATE = "translate"
STAGE_EMBED = "embed"
STAGE_ANALYZE = "analyze"
STAGE_PASS1 = "pass1"
STAGE_PASS2 = "pass2"
STAGE_ENCODE = "encode"
STAGE_FINALIZE = "finalize"

PASS_STAGES: dict[str, int] = {STAGE_PASS1: 1, STAGE_PASS2: 2, STAGE_ENCODE: 1}

STAGE_WEIGHTS: dict[TaskKind, dict[str, float]] = {
    TaskKind.FETCH: {
        STAGE_INFO: 0.0,
        STAGE_TRANSFER: 60.0,
        STAGE_MERGE: 10.0,
        STAGE_CAPTION: 15.0,
        STAGE_TRANSLATE: 5.0,
        STAGE_EMBED: 10.0,
    },
    TaskKind.DERIVE: {
        STAGE_ANALYZE: 5.0,
        STAGE_PASS1: 45.0,
        STAGE_PASS2: 45.0,
        STAGE_ENCODE: 90.0,
        STAGE_CAPTION: 60.0,
        STAGE_TRANSLATE: 15.0,
        STAGE_EMBED: 15.0,
        STAGE_FINALIZE: 5.0,
    },
}

DERIVE_OPERATIONS = ("compress", "caption")


def fetch_stages(*, caption: bool, translate: bool, embed: bool) -> tuple[str, ...]:
    """Ordered stages of a fetch task for the requested extras."""

    if translate and not caption:
        raise ValidationError("Translation requires captions (set subtitle language).")
    if embed and not caption:
        raise ValidationError("Embedding requires captions (set subtitle language).")
    stages = [STAGE_INFO, STAGE_TRANSFER, STAGE_MERGE]
    if caption:
        stages.append(STAGE_CAPTION)
    if translate:
        stages.append(STAGE_TRANSLATE)
    if embed:
        stages.append(STAGE_EMBED)
    return tuple(stages)


def derive_stages(
    *,
    operation: str,
    two_pass: bool = True,
    translate: bool = False,
    embed: bool = False,
) -> tuple[str, ...]:
    """Ordered stages of a derive task for the requested operation."""

    if operation == "compress":
        if translate or embed:
            raise ValidationError("Compression does not take caption options.")
        middle = [STAGE_PASS1, STAGE_PASS2] if two_pass else [STAGE_ENCODE]
        return (STAGE_ANALYZE, *middle, STAGE_FINALIZE)
    if operation == "caption":
        stages = [STAGE_ANALYZE, STAGE_CAPTION]
        if translate:
            stages.append(STAGE_TRANSLATE)
        if embed:
            stages.append(STAGE_EMBED)
        stages.append(STAGE_FINALIZE)
        return tuple(stages)
    raise ValidationError(
        f"Unsupported derive operation: {operation!r}. Expected one of {DERIVE_OPERATIONS}.",
    )


def validate_stages(kind: TaskKind, stages: tuple[str, ...]) -> None:
    """Reject empty, duplicated or unknown stage sequences."""

    if not stages:
        raise ValidationError("Task must have at least one stage.")
    if len(set(stages)) != len(stages):
        raise ValidationError(f"Duplicate stage names: {stages}")
    known = STAGE_WEIGHTS[kind]
    unknown = [stage for stage in stages if stage not in known]
    if unknown:
        raise ValidationError(f"Unknown {kind.value} stages: {unknown}")


def stage_weights(kind: TaskKind, stages: tuple[str, ...]) -> tuple[float, ...]:
    """Weights of ``stages`` normalised to sum to 1.0."""

    table = STAGE_WEIGHTS[kind]
    raw = [table.get(stage, 0.0) for stage in stages]
    total = sum(raw)
    if total <= 0:
        return tuple(1.0 / len(stages) for _ in stages)
    return tuple(weight / total for weight in raw)
