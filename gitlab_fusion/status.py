"""Progress lines shown in the CI job log."""

from __future__ import annotations

import sys
from typing import Optional, TextIO

from gitlab_fusion.utils import log


class ProgressReporter:
    """Write one human readable line per slow or destructive step.

    Lines go to stdout so GitLab shows them in the job log, alongside the
    output of the job itself.
    """

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self._stream = stream

    @property
    def stream(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stdout

    def update(self, msg: str) -> None:
        try:
            self.stream.write(msg + "\n")
            self.stream.flush()
        except OSError as exc:
            log("WARN", f"Could not write progress line: {exc}")
        log("DEBUG", f"Progress: {msg}")
