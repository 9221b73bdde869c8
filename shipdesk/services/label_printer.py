"""Label printing backends.

Printing is a pure side effect: the orchestrator hands a list of label
URLs to a LabelPrinter and does not look at the result. Two backends
ship with ShipDesk: one opens each label in the system browser, the
other writes a manifest file that a print station can pick up.
"""

import logging
import webbrowser
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Protocol

logger = logging.getLogger(__name__)


class LabelPrinter(Protocol):
    """Printing contract used by BatchOrchestrator.print_labels()."""

    def print_labels(self, label_urls: list[str]) -> None:
        """Send every label URL to the printer."""


class BrowserLabelPrinter:
    """Opens each label in a new browser tab for printing."""

    def __init__(self, opener: Callable[[str], bool] = webbrowser.open_new_tab) -> None:
        self._open = opener

    def print_labels(self, label_urls: list[str]) -> None:
        for url in label_urls:
            if not self._open(url):
                logger.warning("Browser refused to open label %s", url)
        logger.info("Opened %d label(s) in the browser", len(label_urls))


class ManifestLabelPrinter:
    """Writes label URLs to a timestamped manifest file, one URL per line."""

    def __init__(
        self,
        output_dir: str | Path,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.output_dir = Path(output_dir)
        self.last_manifest: Path | None = None
        self._clock = clock

    def print_labels(self, label_urls: list[str]) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        stamp = self._clock().strftime("%Y%m%dT%H%M%S_%f")
        body = "\n".join(label_urls) + "\n"
        # Exclusive create; a name already taken gets a counter suffix.
        attempt = 0
        while True:
            suffix = f"_{attempt}" if attempt else ""
            path = self.output_dir / f"labels_{stamp}{suffix}.txt"
            try:
                with path.open("x", encoding="utf-8") as fh:
                    fh.write(body)
                break
            except FileExistsError:
                attempt += 1
        self.last_manifest = path
        logger.info("Wrote %d label URL(s) to %s", len(label_urls), path)
