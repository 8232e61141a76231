import copy
import logging
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field

from rich.console import Console

from .config import Config
from .constants import APP_NAME
from .errors import RepomanError

logger = logging.getLogger(APP_NAME)
console = Console()


@dataclass
class BatchReport:
    """Tally of a fleet-wide run.

    Attributes:
        succeeded (list[str]): Repositories whose operation completed.
        failed (dict[str, str]): Repository name to error message.
    """

    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


def run_batch(
    names: Iterable[str],
    operation: Callable[[str, Config], object],
    config: Config,
    verb: str,
) -> BatchReport:
    """Runs `operation` once per repository on a thread pool.

    Each worker gets its own copy of the configuration. A failing repository
    never stops the others; results are printed as they complete.

    Args:
        names (Iterable[str]): Repository names; snapshotted before dispatch.
        operation (Callable[[str, Config], object]): The per-repository work.
        config (Config): Active configuration.
        verb (str): Label for the summary line, e.g. 'Sync'.

    Returns:
        BatchReport: Successes and failures.
    """
    snapshot = tuple(names)
    report = BatchReport()
    if not snapshot:
        console.print(f"[yellow]Nothing to {verb.lower()}.[/yellow]")
        return report

    workers = max(1, min(config.agent.batch_workers, len(snapshot)))
    logger.info(f"batch {verb}: {len(snapshot)} repositories, {workers} workers")

    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = {
            pool.submit(operation, name, copy.deepcopy(config)): name
            for name in snapshot
        }
        for future in as_completed(futures):
            name = futures[future]
            try:
                future.result()
            except RepomanError as e:
                report.failed[name] = str(e)
                logger.error(f"batch {verb} failed for '{name}': {e}")
                console.print(f"[bold red]✘[/bold red] {name}: {e}")
            except Exception as e:
                report.failed[name] = str(e)
                logger.exception(f"batch {verb} crashed for '{name}'")
                console.print(f"[bold red]✘[/bold red] {name}: {e}")
            else:
                report.succeeded.append(name)
                console.print(f"[bold green]✔[/bold green] {name}")

    console.print(
        f"{verb} complete: {len(report.succeeded)} succeeded, "
        f"{len(report.failed)} failed"
    )
    return report
