"""Stage variants, dispatched by stage name.

Every handler takes a ``StageContext`` and returns the artifacts it produced.
Handlers report progress through the context and stop at safe points; raised
exceptions are classified by the retry policy.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

from media_tasks.orchestrator.collaborators import TranscodeParams, TranscodeProgress
from media_tasks.orchestrator.errors import CorruptionError, ValidationError
from media_tasks.orchestrator.models import Checkpoint, CheckpointKind, TaskKind
from media_tasks.orchestrator.stage_context import StageContext
from media_tasks.orchestrator.stages import (
    STAGE_ANALYZE,
    STAGE_CAPTION,
    STAGE_EMBED,
    STAGE_ENCODE,
    STAGE_FINALIZE,
    STAGE_INFO,
    STAGE_MERGE,
    STAGE_PASS1,
    STAGE_PASS2,
    STAGE_TRANSFER,
    STAGE_TRANSLATE,
)
from media_tasks.orchestrator.subtitles import (
    bilingual_segments,
    read_segments,
    segments_to_srt,
    write_segments,
)

logger = logging.getLogger(__name__)

StageHandler = Callable[[StageContext], dict[str, Any]]

_AUDIO_SHARE = 0.2
_HASH_CHUNK = 1024 * 1024


def run_info(ctx: StageContext) -> dict[str, Any]:
    source_ref = _require(ctx.task.source_ref, "source_ref")
    info = ctx.collaborators.fetcher.probe(source_ref, token=ctx.token)
    ctx.report(1.0, total_bytes=info.total_bytes)
    return {"media_info": info.to_dict()}


def run_transfer(ctx: StageContext) -> dict[str, Any]:
    source_ref = _require(ctx.task.source_ref, "source_ref")
    partial = ctx.workdir.download_partial
    total = (ctx.artifacts.get("media_info") or {}).get("total_bytes")
    if ctx.plan.checkpoint is not None and ctx.plan.checkpoint.total_bytes is not None:
        total = ctx.plan.checkpoint.total_bytes
    downloaded = ctx.plan.byte_offset

    stream = ctx.collaborators.fetcher.fetch(
        source_ref,
        partial,
        byte_offset=ctx.plan.byte_offset,
        hints=ctx.fetch_hints(),
        token=ctx.token,
    )
    try:
        for progress in stream:
            total = progress.total_bytes or total
            downloaded = progress.bytes_written
            if total:
                downloaded = min(downloaded, total)
            ctx.report(
                downloaded / total if total else 0.0,
                rate_bps=progress.rate_bps,
                eta_seconds=progress.eta_seconds,
                downloaded_bytes=downloaded,
                total_bytes=total,
                checkpoint=Checkpoint(
                    kind=CheckpointKind.BYTES,
                    stage=ctx.stage_name,
                    bytes_confirmed=downloaded,
                    total_bytes=total,
                    partial_path=str(partial),
                ),
            )
            ctx.safe_point()
    finally:
        close = getattr(stream, "close", None)
        if close is not None:
            close()

    if not partial.is_file():
        raise CorruptionError(f"Transfer finished without a file at {partial}")
    size = partial.stat().st_size
    expected_sha256 = ctx.options.get("expected_sha256")
    if expected_sha256:
        actual = _sha256(partial)
        if actual != str(expected_sha256).lower():
            raise CorruptionError(f"Checksum mismatch for {partial}: {actual}")
    ctx.report(1.0, downloaded_bytes=size, total_bytes=size)
    return {"download_path": str(partial), "total_bytes": size}


def run_merge(ctx: StageContext) -> dict[str, Any]:
    source = Path(_require(ctx.artifacts.get("download_path"), "download_path"))
    destination = ctx.destination
    staged = _staging_path(destination)
    _drain_transcode(
        ctx,
        ctx.collaborators.transcoder.run(
            source,
            staged,
            TranscodeParams(copy_streams=True),
            token=ctx.token,
        ),
    )
    os.replace(staged, destination)
    ctx.report(1.0)
    return {"output_path": str(destination)}


def run_caption(ctx: StageContext) -> dict[str, Any]:
    media = Path(_media_source(ctx))
    wav = ctx.workdir.audio_wav
    _drain_transcode(
        ctx,
        ctx.collaborators.transcoder.run(
            media,
            wav,
            TranscodeParams(video_codec=None, audio_codec=None, extract_audio_wav=True),
            token=ctx.token,
        ),
        scale=_AUDIO_SHARE,
    )
    segments = []
    for progress in ctx.collaborators.transcriber.transcribe(
        wav,
        ctx.options.get("subtitle_language"),
        token=ctx.token,
    ):
        fraction = progress.fraction
        if fraction is None and progress.segments_total:
            fraction = progress.segments_done / progress.segments_total
        if fraction is not None:
            ctx.report(_AUDIO_SHARE + (1 - _AUDIO_SHARE) * fraction)
        if progress.segments:
            segments = progress.segments
        ctx.token.raise_if_cancelled()
    if not segments:
        logger.warning("Task %s: transcription produced no segments", ctx.task.task_id)

    write_segments(ctx.workdir.captions_json, segments)
    srt_path = _subtitle_path(ctx)
    srt_path.parent.mkdir(parents=True, exist_ok=True)
    srt_path.write_text(segments_to_srt(segments), "utf-8")
    ctx.report(1.0)
    return {
        "captions_path": str(srt_path),
        "segments_path": str(ctx.workdir.captions_json),
        "segment_count": len(segments),
    }


def run_translate(ctx: StageContext) -> dict[str, Any]:
    target = _require(ctx.options.get("translate_to"), "translate_to")
    segments = read_segments(Path(_require(ctx.artifacts.get("segments_path"), "segments_path")))
    batch_size = max(1, ctx.translation_batch_size)
    translated: list[str] = []
    batches = max(1, -(-len(segments) // batch_size))
    for index in range(0, len(segments), batch_size):
        batch = segments[index : index + batch_size]
        translated.extend(
            ctx.collaborators.translator.translate_batch(
                [segment.text for segment in batch],
                source_language=ctx.options.get("subtitle_language"),
                target_language=str(target),
                token=ctx.token,
            ),
        )
        ctx.report((index // batch_size + 1) / batches)
        ctx.token.raise_if_cancelled()

    if ctx.options.get("bilingual"):
        output_segments = bilingual_segments(segments, translated)
    else:
        output_segments = [
            type(segment)(start_ms=segment.start_ms, end_ms=segment.end_ms, text=text)
            for segment, text in zip(segments, translated, strict=True)
        ]
    write_segments(ctx.workdir.translated_json, output_segments)
    captions = Path(_require(ctx.artifacts.get("captions_path"), "captions_path"))
    translated_path = captions.with_suffix(f".{target}.srt")
    translated_path.write_text(segments_to_srt(output_segments), "utf-8")
    ctx.report(1.0)
    return {"translated_captions_path": str(translated_path)}


def run_embed(ctx: StageContext) -> dict[str, Any]:
    media = Path(_media_source(ctx))
    subtitle = ctx.artifacts.get("translated_captions_path") or ctx.artifacts.get("captions_path")
    subtitle_path = _require(subtitle, "captions_path")
    destination = ctx.destination
    staged = _staging_path(destination)
    language = ctx.options.get("translate_to") or ctx.options.get("subtitle_language")
    _drain_transcode(
        ctx,
        ctx.collaborators.transcoder.run(
            media,
            staged,
            TranscodeParams(
                subtitle_path=str(subtitle_path),
                subtitle_language=str(language) if language else None,
            ),
            token=ctx.token,
        ),
    )
    os.replace(staged, destination)
    ctx.report(1.0)
    return {"output_path": str(destination), "embedded_subtitles": str(subtitle_path)}


def run_analyze(ctx: StageContext) -> dict[str, Any]:
    source = Path(_require(ctx.task.input_path, "input_path"))
    if not source.is_file():
        raise ValidationError(f"Input file does not exist: {source}")
    info = ctx.collaborators.transcoder.probe(source, token=ctx.token)
    artifacts: dict[str, Any] = {"media_info": info.to_dict()}
    target_size_mb = ctx.options.get("target_size_mb")
    if target_size_mb and info.duration_seconds:
        audio_kbps = int(ctx.options.get("audio_bitrate_kbps") or 128)
        total_kbps = float(target_size_mb) * 8192 / info.duration_seconds
        artifacts["video_bitrate_kbps"] = max(100, int(total_kbps - audio_kbps))
    ctx.report(1.0)
    return artifacts


def run_pass1(ctx: StageContext) -> dict[str, Any]:
    source = Path(_require(ctx.task.input_path, "input_path"))
    passlog = ctx.workdir.passlog_prefix
    ctx.propose_checkpoint(
        Checkpoint(
            kind=CheckpointKind.PASS,
            stage=ctx.stage_name,
            pass_number=1,
            passlog_path=str(passlog),
        ),
    )
    _drain_transcode(
        ctx,
        ctx.collaborators.transcoder.run(
            source,
            Path(os.devnull),
            _encode_params(ctx, pass_number=1, passlog_prefix=str(passlog)),
            token=ctx.token,
        ),
    )
    ctx.report(1.0)
    return {"passlog_path": str(passlog)}


def run_pass2(ctx: StageContext) -> dict[str, Any]:
    source = Path(_require(ctx.task.input_path, "input_path"))
    checkpoint = ctx.plan.checkpoint
    passlog = (checkpoint.passlog_path if checkpoint else None) or ctx.artifacts.get(
        "passlog_path",
    )
    passlog = _require(passlog, "passlog_path")
    partial = ctx.workdir.pass_output(2, ctx.destination.suffix)
    ctx.propose_checkpoint(
        Checkpoint(
            kind=CheckpointKind.PASS,
            stage=ctx.stage_name,
            pass_number=2,
            passlog_path=str(passlog),
            partial_path=str(partial),
        ),
    )
    _drain_transcode(
        ctx,
        ctx.collaborators.transcoder.run(
            source,
            partial,
            _encode_params(ctx, pass_number=2, passlog_prefix=str(passlog)),
            token=ctx.token,
        ),
    )
    ctx.report(1.0)
    return {"encoded_path": str(partial)}


def run_encode(ctx: StageContext) -> dict[str, Any]:
    source = Path(_require(ctx.task.input_path, "input_path"))
    partial = ctx.workdir.pass_output(1, ctx.destination.suffix)
    ctx.propose_checkpoint(
        Checkpoint(
            kind=CheckpointKind.PASS,
            stage=ctx.stage_name,
            pass_number=1,
            partial_path=str(partial),
        ),
    )
    _drain_transcode(
        ctx,
        ctx.collaborators.transcoder.run(
            source,
            partial,
            _encode_params(ctx, pass_number=None, passlog_prefix=None),
            token=ctx.token,
        ),
    )
    ctx.report(1.0)
    return {"encoded_path": str(partial)}


def run_finalize(ctx: StageContext) -> dict[str, Any]:
    destination = ctx.destination
    encoded = ctx.artifacts.get("encoded_path")
    if encoded:
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(encoded), destination)
    elif ctx.artifacts.get("output_path"):
        destination = Path(ctx.artifacts["output_path"])
    elif ctx.artifacts.get("translated_captions_path") or ctx.artifacts.get("captions_path"):
        destination = Path(
            ctx.artifacts.get("translated_captions_path") or ctx.artifacts["captions_path"],
        )
    if not destination.exists():
        raise CorruptionError(f"Expected output is missing: {destination}")
    size = destination.stat().st_size
    artifacts: dict[str, Any] = {"output_path": str(destination), "output_bytes": size}
    source = ctx.task.input_path
    if encoded and source and Path(source).is_file():
        source_size = Path(source).stat().st_size
        if source_size:
            artifacts["compression_ratio"] = round(size / source_size, 4)
    ctx.report(1.0)
    return artifacts


STAGE_HANDLERS: dict[str, StageHandler] = {
    STAGE_INFO: run_info,
    STAGE_TRANSFER: run_transfer,
    STAGE_MERGE: run_merge,
    STAGE_CAPTION: run_caption,
    STAGE_TRANSLATE: run_translate,
    STAGE_EMBED: run_embed,
    STAGE_ANALYZE: run_analyze,
    STAGE_PASS1: run_pass1,
    STAGE_PASS2: run_pass2,
    STAGE_ENCODE: run_encode,
    STAGE_FINALIZE: run_finalize,
}


def _drain_transcode(
    ctx: StageContext,
    stream: Iterator[TranscodeProgress],
    *,
    scale: float = 1.0,
) -> None:
    for progress in stream:
        if progress.total_time:
            fraction = min(1.0, progress.time_processed / progress.total_time)
            ctx.report(fraction * scale, eta_seconds=progress.eta_seconds)
        ctx.token.raise_if_cancelled()


def _encode_params(
    ctx: StageContext,
    *,
    pass_number: int | None,
    passlog_prefix: str | None,
) -> TranscodeParams:
    options = ctx.options
    bitrate = options.get("video_bitrate_kbps") or ctx.artifacts.get("video_bitrate_kbps")
    return TranscodeParams(
        video_codec=str(options.get("video_codec") or "libx264"),
        audio_codec=str(options.get("audio_codec") or "aac"),
        crf=int(options["crf"]) if options.get("crf") is not None and not bitrate else None,
        preset=options.get("preset"),
        scale_height=int(options["scale_height"]) if options.get("scale_height") else None,
        video_bitrate_kbps=int(bitrate) if bitrate else None,
        audio_bitrate_kbps=(
            int(options["audio_bitrate_kbps"]) if options.get("audio_bitrate_kbps") else None
        ),
        pass_number=pass_number,
        passlog_prefix=passlog_prefix,
    )


def _media_source(ctx: StageContext) -> str:
    if ctx.task.kind == TaskKind.FETCH:
        return _require(ctx.artifacts.get("output_path"), "output_path")
    return _require(ctx.task.input_path, "input_path")


def _subtitle_path(ctx: StageContext) -> Path:
    explicit = ctx.options.get("subtitle_path")
    if explicit:
        return Path(explicit)
    if ctx.destination.suffix.lower() == ".srt":
        return ctx.destination
    return ctx.destination.with_suffix(".srt")


def _staging_path(destination: Path) -> Path:
    destination.parent.mkdir(parents=True, exist_ok=True)
    return destination.with_name(f"{destination.stem}.partial{destination.suffix}")


def _require(value: Any, name: str) -> Any:
    if value in (None, ""):
        raise ValidationError(f"Missing required value: {name}")
    return value


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(_HASH_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()
