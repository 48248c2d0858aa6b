"""Run several backup jobs concurrently and render their progress.

One worker thread per job drives borg and pushes ``(index, event)`` pairs
onto a single queue. The calling thread is the only consumer: it owns all
display state, so nothing on the rendering side needs a lock.
"""
from __future__ import annotations

import logging
import queue
import threading
from typing import TYPE_CHECKING

from rich.console import Console
from rich.markup import escape
from rich.progress import (
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)

from borrg.events import ArchiveProgress, Error

if TYPE_CHECKING:
    from borrg.backend import Borg
    from borrg.events import Event
    from borrg.models import Job

logger = logging.getLogger(__name__)

_DONE = object()


def _worker(borg: "Borg", job: "Job", index: int, channel: queue.Queue) -> None:
    """Run one job, forwarding its events in the order borg emitted them."""
    try:
        borg.create_archive(job.repo, job.archive, lambda event: channel.put((index, event)))
    except Exception as e:
        logger.debug("Job %s failed: %s", job.label, e)
        channel.put((index, Error(e)))
    finally:
        channel.put((index, _DONE))


def _make_progress(console: Console) -> Progress:
    return Progress(
        TimeElapsedColumn(),
        SpinnerColumn(),
        TextColumn("{task.description}"),
        TextColumn("[yellow]{task.fields[stats]}"),
        TextColumn("{task.fields[message]}"),
        console=console,
        transient=True,
    )


class _JobDisplay:
    """Rendering state for one job: its progress task and log prefix."""

    def __init__(self, progress: Progress, job: "Job", multi: bool):
        self.progress = progress
        self.prefix = f"[{job.label}] " if multi else ""
        self.task_id = progress.add_task(
            escape(self.prefix), total=None, stats="", message=""
        )
        self.failed = False

    def handle(self, event: "Event") -> None:
        if isinstance(event, ArchiveProgress):
            if event.finished:
                return
            self.progress.update(
                self.task_id,
                completed=event.nfiles,
                stats=escape(event.stats),
                message=escape(event.path),
            )
            return
        if isinstance(event, Error):
            self.failed = True
            self.progress.console.print(
                f"{escape(self.prefix)}[red]Error: {escape(str(event))}[/red]"
            )
            return
        text = str(event)
        if text:
            self.progress.console.print(f"{self.prefix}{text}", markup=False, highlight=False)


def run_jobs(borg: "Borg", jobs: list["Job"], console: Console | None = None) -> list[int]:
    """Run every job at once. Returns the indices of jobs that reported an error.

    A failing job never stops its siblings. There is no cancellation: each
    job runs until its borg process exits.
    """
    if not jobs:
        return []

    console = console or Console(stderr=True)
    channel: queue.Queue = queue.Queue()
    multi = len(jobs) > 1

    threads = [
        threading.Thread(
            target=_worker,
            args=(borg, job, index, channel),
            name=f"borrg-job-{index}",
            daemon=True,
        )
        for index, job in enumerate(jobs)
    ]

    with _make_progress(console) as progress:
        displays = [_JobDisplay(progress, job, multi) for job in jobs]
        for thread in threads:
            thread.start()

        remaining = len(threads)
        while remaining:
            index, event = channel.get()
            if event is _DONE:
                remaining -= 1
                continue
            displays[index].handle(event)

    for thread in threads:
        thread.join()

    return [i for i, display in enumerate(displays) if display.failed]
