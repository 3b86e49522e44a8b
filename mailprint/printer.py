"""CUPS print dispatch through ``lp``."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Sequence

from .config import DEFAULT_PRINTER
from .errors import PrintError

logger = logging.getLogger(__name__)

PRINT_TIMEOUT = 60
RASTERIZE_TIMEOUT = 300


class PrintSink:
    """Queue files on a CUPS printer, optionally rasterizing PDFs first."""

    def __init__(
        self,
        printer: str = DEFAULT_PRINTER,
        flags: Sequence[str] = (),
        rasterize_pdf: bool = False,
        lp_command: str = "lp",
        convert_command: str = "convert",
    ) -> None:
        self.printer = printer
        self.flags = list(flags)
        self.rasterize_pdf = rasterize_pdf
        self.lp_command = lp_command
        self.convert_command = convert_command

    def build_command(self, path: Path) -> list[str]:
        args = [self.lp_command, *self.flags]
        if self.printer != DEFAULT_PRINTER:
            args += ["-d", self.printer]
        args.append(str(path))
        return args

    def print_file(self, path: Path) -> None:
        """Send ``path`` to the printer; raises PrintError on a non-zero exit."""
        target = path
        if self.rasterize_pdf and path.suffix.lower() == ".pdf":
            target = self.rasterize(path)

        args = self.build_command(target)
        logger.debug("Printing details: %s", args)
        try:
            completed = subprocess.run(
                args, capture_output=True, text=True, timeout=PRINT_TIMEOUT, check=False
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise PrintError(
                f"Unable to run {self.lp_command}: {exc}", self.printer, self._hint()
            ) from exc
        finally:
            if target != path:
                target.unlink(missing_ok=True)

        if completed.returncode != 0:
            output = (completed.stderr or completed.stdout or "").strip()
            raise PrintError(
                f"{self.lp_command} exited with status {completed.returncode}: {output}",
                self.printer,
                self._hint(),
            )
        logger.info("Added %s to print queue (printer=%s)", path.name, self.printer)

    def rasterize(self, path: Path) -> Path:
        """Render a PDF to PNG; falls back to the original file on failure."""
        out = path.with_suffix(".png")
        args = [self.convert_command, "-density", "600", str(path), str(out)]
        try:
            subprocess.run(args, capture_output=True, timeout=RASTERIZE_TIMEOUT, check=True)
        except (OSError, subprocess.SubprocessError) as exc:
            logger.error("Failed to rasterize PDF %s: %s", path.name, exc)
            out.unlink(missing_ok=True)
            return path
        return out

    def _hint(self) -> str:
        if self.printer == DEFAULT_PRINTER:
            return (
                "No usable default printer. Set a default printer with lpoptions -d, "
                "or set PRINTER to the printer you wish to use."
            )
        return f"Printer '{self.printer}' is unreachable or misnamed; check that it is online and PRINTER is correct."
