"""Task orchestrator for resumable, multi-stage media jobs.

Why not Celery / Dramatiq / Arq?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The hard part here is not queuing. It is the boundary between the queue and
long-running external tools (yt-dlp, ffmpeg, whisper.cpp) whose partial
output on disk decides how a task continues:

- Byte checkpoints validated against partial files with a content
  fingerprint before a transfer is resumed at an offset.
- Pass-level resume for two-pass encodes driven by ffmpeg pass logs.
- Failure classification from exit codes and stderr that picks a backoff
  strategy (immediate, exponential, linear, scheduled, restart from zero).
- Monotonic, weighted progress folded from heterogeneous progress lines.

A broker would add an operational dependency to a single-machine,
SQLite-only, CLI-first tool and still need all of the above as custom task
logic. One orchestration thread over a SQLite store plus a bounded stage
pool is the right trade-off for this scope.
"""
