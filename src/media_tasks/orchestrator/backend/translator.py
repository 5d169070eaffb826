"""Translator that shells out to a configurable command template."""

from __future__ import annotations

import json
import shlex
from collections.abc import Sequence

from media_tasks.orchestrator.collaborators import StopToken
from media_tasks.orchestrator.errors import RemoteServerError, ValidationError
from media_tasks.orchestrator.process_runner import ProcessRunner, ProcessSpec


class CommandTranslator:
    """Pipes a JSON array of texts to a command and reads a JSON array back.

    The template may reference ``{source}`` and ``{target}`` language codes,
    for example ``my-translate --from {source} --to {target} --json``.
    """

    def __init__(
        self,
        *,
        command_template: str,
        timeout_seconds: float | None = 300.0,
        grace_seconds: float = 2.0,
    ) -> None:
        self.command_template = command_template
        self.timeout_seconds = timeout_seconds
        self.grace_seconds = grace_seconds

    def translate_batch(
        self,
        texts: Sequence[str],
        *,
        source_language: str | None,
        target_language: str,
        token: StopToken,
    ) -> list[str]:
        if not texts:
            return []
        runner = ProcessRunner(
            ProcessSpec(
                argv=build_translate_args(
                    command_template=self.command_template,
                    source_language=source_language or "auto",
                    target_language=target_language,
                ),
                label="translator",
                timeout_seconds=self.timeout_seconds,
                stdin_text=json.dumps(list(texts), ensure_ascii=False),
            ),
            grace_seconds=self.grace_seconds,
        )
        token.on_cancel(runner.cancel)
        result = runner.run()
        try:
            translated = json.loads(result.stdout)
        except json.JSONDecodeError as error:
            raise RemoteServerError("Translator returned malformed JSON") from error
        if not isinstance(translated, list) or len(translated) != len(texts):
            raise RemoteServerError(
                f"Translator returned {len(translated) if isinstance(translated, list) else 0} "
                f"texts for {len(texts)} inputs",
            )
        return [str(item) for item in translated]


def build_translate_args(
    *,
    command_template: str,
    source_language: str,
    target_language: str,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise ValidationError("Translation command template is empty.")
    try:
        rendered = stripped.format(
            source=shlex.quote(source_language),
            target=shlex.quote(target_language),
        )
    except KeyError as error:
        raise ValidationError(f"Unsupported command template placeholder: {error}") from error
    argv = shlex.split(rendered)
    if not argv:
        raise ValidationError("Translation command template rendered empty command.")
    return argv
