import logging

from rich.console import Console

from .constants import APP_NAME, PROGRESS_STEP_PERCENT
from .git_wrapper import TransferProgress

logger = logging.getLogger(APP_NAME)


class ProgressReporter:
    """Throttles transfer progress to fixed percentage steps.

    Each phase (receiving, then indexing) is reported when it advances by at
    least `step` percent, and once more when it reaches 100%. Every reported
    step is logged at DEBUG; when a console is supplied it is also drawn as a
    single self-overwriting line.

    Attributes:
        label (str): Operation name used in log lines (e.g. 'init', 'sync').
        reported (int): Number of steps that passed the throttle.
    """

    def __init__(
        self,
        label: str,
        console: Console | None = None,
        step: int = PROGRESS_STEP_PERCENT,
    ):
        self.label = label
        self.console = console
        self.step = step
        self.reported = 0
        self._phase: str | None = None
        self._last_pct = 0
        self._drawn = False
        self._bytes = 0

    def __call__(self, event: TransferProgress) -> None:
        if event.total == 0:
            return
        self._bytes = max(self._bytes, event.received_bytes)
        if event.phase != self._phase:
            self._phase = event.phase
            self._last_pct = -self.step

        pct = event.percent
        if pct < self._last_pct + self.step and not (
            pct == 100 and self._last_pct != 100
        ):
            return

        self._last_pct = pct
        self.reported += 1
        mib = self._bytes / 1_048_576
        logger.debug(
            f"{self.label} transfer: {event.phase} {event.done}/{event.total} "
            f"objects ({mib:.1f} MiB)"
        )
        if self.console is not None:
            self.console.print(
                f"\r  {event.phase}: {pct}% ({event.done}/{event.total}), {mib:.1f} MiB   ",
                end="",
                highlight=False,
            )
            self._drawn = True

    def finish(self) -> None:
        """Terminates the progress line, if one was drawn."""
        if self._drawn and self.console is not None:
            self.console.print()
            self._drawn = False
