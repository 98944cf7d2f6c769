#!/usr/bin/env python3
"""
CLI for the chunked upload client
Re-running the same command after a failure resumes the upload
"""

import logging
import sys

import click
from rich.console import Console
from rich.progress import BarColumn, Progress, TextColumn

from chunkvault.chunker import DEFAULT_CHUNK_SIZE
from chunkvault.client.api import UploadApiClient
from chunkvault.client.orchestrator import UploadOrchestrator
from chunkvault.config import settings
from chunkvault.exceptions import UploadCancelled, UploadError

console = Console()


@click.command()
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--parent-id", default="", help="Destination folder id")
@click.option("--api-url", default=settings.API_BASE_URL, show_default=True, help="Upload server URL")
@click.option("--chunk-size", default=DEFAULT_CHUNK_SIZE, show_default=True, type=int, help="Part size in bytes")
@click.option("--timeout", default=settings.REQUEST_TIMEOUT, show_default=True, type=float,
              help="Per-request timeout in seconds")
@click.option("--verbose", is_flag=True, help="Show debug logging")
def main(file_path, parent_id, api_url, chunk_size, timeout, verbose):
    """Upload FILE_PATH in resumable parts"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    api = UploadApiClient(api_url, timeout=timeout)
    try:
        with Progress(
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            TextColumn("{task.percentage:>5.1f}%"),
            console=console,
        ) as progress:
            task = progress.add_task(click.format_filename(file_path), total=100)
            orchestrator = UploadOrchestrator(
                api,
                file_path,
                parent_id=parent_id,
                chunk_size=chunk_size,
                on_progress=lambda percent: progress.update(task, completed=percent),
            )
            try:
                result = orchestrator.run()
            except KeyboardInterrupt:
                # session stays in_progress server-side
                raise UploadCancelled("Interrupted", session_id=orchestrator.session_id)
    except UploadCancelled as e:
        console.print(f"[yellow]Upload cancelled[/yellow] (session {e.session_id}); run again to resume")
        sys.exit(130)
    except UploadError as e:
        console.print(f"[red]Upload failed:[/red] {e}")
        if e.session_id:
            console.print(f"  Session {e.session_id} kept on the server; run the same command again to resume")
        sys.exit(1)
    finally:
        api.close()

    if result.instant:
        console.print(f"[green]Instant upload:[/green] {result.file['name']} already stored, no bytes sent")
    else:
        console.print(
            f"[green]Uploaded[/green] {result.file['name']} "
            f"({len(result.parts_transferred)} parts sent, {len(result.parts_skipped)} resumed)"
        )
    console.print(f"  File id: {result.file['id']}")


if __name__ == "__main__":
    main()
