"""
yt-dlp subprocess adapter: spawns the tool, translates its progress output
and locates the produced file.
"""

import asyncio
import json
import logging
import re
import time
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple

from config import (
    DOWNLOAD_BAND,
    DOWNLOAD_PROGRESS_INTERVAL_SECONDS,
    KNOWN_MEDIA_EXTENSIONS,
    PARTIAL_EXTENSIONS,
)
from errors import DownloadedFileMissing, ExtractionError
from models import MediaInfo, Quality

logger = logging.getLogger(__name__)

ANSI_RE = re.compile(r"\x1B\[[0-?]*[ -/]*[@-~]")
PROGRESS_PATTERNS = (
    re.compile(r"\[download\]\s+(\d+\.?\d*)%\s+of\s+~?\s*(\d+\.?\d*\s*[KMGT]?i?B)", re.IGNORECASE),
    re.compile(r"(\d+\.?\d*)%"),
)
# Used when a line has a percentage but no total size.
DEFAULT_TOTAL_SIZE = 10 * 1024 * 1024

_SIZE_MULTIPLIERS = {
    "b": 1,
    "kib": 1024,
    "kb": 1000,
    "mib": 1024 ** 2,
    "mb": 1000 ** 2,
    "gib": 1024 ** 3,
    "gb": 1000 ** 3,
    "tib": 1024 ** 4,
    "tb": 1000 ** 4,
}


def remove_ansi_codes(text: str) -> str:
    return ANSI_RE.sub("", text)


def parse_size_string(value: str) -> int:
    """'10.00MiB' -> 10485760. Unknown units count as bytes."""
    match = re.match(r"\s*(\d+\.?\d*)\s*([KMGT]?i?B)?\s*$", value, re.IGNORECASE)
    if not match:
        return 0
    unit = (match.group(2) or "B").lower()
    return int(float(match.group(1)) * _SIZE_MULTIPLIERS.get(unit, 1))


def parse_progress_line(line: str) -> Optional[Tuple[float, int]]:
    """Extract (percentage, total bytes) from a yt-dlp progress line."""
    clean_line = remove_ansi_codes(line)
    for pattern in PROGRESS_PATTERNS:
        match = pattern.search(clean_line)
        if not match:
            continue
        try:
            percentage = float(match.group(1))
        except ValueError:
            continue
        total_size = parse_size_string(match.group(2)) if pattern.groups > 1 else DEFAULT_TOTAL_SIZE
        return percentage, total_size
    return None


def to_overall_percentage(percentage: float) -> int:
    """Rescale tool percentage into the download band of the task bar."""
    return int(max(0.0, min(percentage, 100.0)) * DOWNLOAD_BAND / 100)


def parse_impersonate_targets(output: str) -> List[Tuple[str, str]]:
    """
    Parse ``yt-dlp --list-impersonate-targets`` output.

    Returns (target, description) pairs for targets that are usable; the
    target is lowercased and includes the OS when one is listed.
    """
    targets: List[Tuple[str, str]] = []
    for line in output.splitlines()[3:]:
        parts = line.split()
        if len(parts) < 3:
            continue
        client, os_name, source = parts[0], parts[1], " ".join(parts[2:])
        if "unavailable" in source.lower():
            continue
        target = client if os_name == "-" else f"{client}:{os_name}"
        targets.append((target.lower(), f"{target} {source}"))
    return targets


class YoutubeFetcher:
    """Runs yt-dlp for one link at a time per call; safe to share between tasks."""

    def __init__(
        self,
        yt_dlp_path: str,
        output_dir: str,
        ffmpeg_dir: str,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.yt_dlp_path = yt_dlp_path
        self.output_dir = Path(output_dir)
        self.ffmpeg_dir = ffmpeg_dir
        self._clock = clock
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def build_command(
        self,
        url: str,
        filename_stem: str,
        quality: Quality,
        fingerprint: Optional[str] = None,
    ) -> List[str]:
        if quality is Quality.AUDIO:
            output_template = self.output_dir / f"{filename_stem}.%(ext)s"
        else:
            output_template = self.output_dir / f"{filename_stem}.mp4"

        args = [
            self.yt_dlp_path,
            "--extractor-args", "tiktok:skip=feed",
            "--output", str(output_template),
            "--no-part",
            "--no-mtime",
            "--no-playlist",
            "--ffmpeg-location", str(self.ffmpeg_dir),
            "--progress",
            "--newline",
        ]

        if fingerprint:
            logger.info("Applying TLS fingerprint: %s", fingerprint)
            args.append(f"--impersonate={fingerprint}")

        if quality is Quality.H264:
            args += ["-f", "bestvideo[vcodec^=avc]+bestaudio/best[vcodec^=avc]/best"]
        elif quality is Quality.AUDIO:
            args += ["-x", "--audio-format", "best"]
        else:
            args += ["-f", "bestvideo+bestaudio/best"]

        args.append(url)
        return args

    async def download(
        self,
        url: str,
        filename_stem: str,
        quality: Quality,
        fingerprint: Optional[str] = None,
        progress: Any = None,
    ) -> Path:
        """
        Download ``url`` into ``output_dir/<filename_stem>.*``.

        Progress lines from both output streams are forwarded to
        ``progress`` (a ProgressBar) rescaled into the download band, at most
        every DOWNLOAD_PROGRESS_INTERVAL_SECONDS and only when increasing.
        """
        command = self.build_command(url, filename_stem, quality, fingerprint)
        logger.info("Starting download for URL: %s", url)
        logger.debug("Full yt-dlp command: %s", command)
        started = self._clock()

        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout_lines: List[str] = []
        stderr_lines: List[str] = []
        lines: asyncio.Queue = asyncio.Queue()
        readers = [
            asyncio.create_task(_pump_lines(process.stdout, stdout_lines, lines)),
            asyncio.create_task(_pump_lines(process.stderr, stderr_lines, lines)),
        ]

        try:
            await self._consume_progress(lines, len(readers), progress)
            returncode = await process.wait()
        except BaseException:
            for reader in readers:
                reader.cancel()
            if process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()
            self._remove_partial(filename_stem)
            raise

        elapsed = self._clock() - started
        logger.debug(
            "yt-dlp finished with status %s in %.2fs (stdout lines: %s, stderr lines: %s)",
            returncode,
            elapsed,
            len(stdout_lines),
            len(stderr_lines),
        )

        if returncode != 0:
            diagnostic = "\n".join(stderr_lines).strip()
            logger.error("yt-dlp failed with status %s for URL: %s", returncode, url)
            logger.error("yt-dlp stderr: %s", diagnostic)
            self._remove_partial(filename_stem)
            raise ExtractionError(diagnostic or f"exit status {returncode}", returncode)

        if progress is not None:
            await progress.update(DOWNLOAD_BAND, "⬇️ Download completed")

        path = self.locate_output(filename_stem)
        if path is None:
            logger.error("Downloaded file not found after successful yt-dlp execution for: %s", url)
            raise DownloadedFileMissing("Downloaded file not found")
        logger.info("Download completed in %.2fs for %s: %s", elapsed, url, path)
        return path

    async def _consume_progress(self, lines: asyncio.Queue, producers: int, progress: Any) -> None:
        last_percentage = 0.0
        last_forwarded = self._clock()
        finished = 0
        while finished < producers:
            line = await lines.get()
            if line is None:
                finished += 1
                continue
            parsed = parse_progress_line(line)
            if parsed is None or progress is None:
                continue
            percentage, total_size = parsed
            if percentage <= last_percentage:
                continue
            now = self._clock()
            if now - last_forwarded < DOWNLOAD_PROGRESS_INTERVAL_SECONDS:
                continue
            last_percentage = percentage
            last_forwarded = now
            note = f"⬇️ Downloading: {percentage:.1f}% ({total_size / 1_048_576:.1f} MB)"
            await progress.update(to_overall_percentage(percentage), note)

    def locate_output(self, filename_stem: str) -> Optional[Path]:
        """
        Find the file yt-dlp produced for ``filename_stem``.

        Order: a finished file with an unexpected name (merged formats,
        audio conversion), then ``<stem><ext>`` for known extensions, then
        anything starting with the stem.
        """
        candidates = self._files_with_stem(filename_stem)
        for path in candidates:
            if path.suffix.lower() in PARTIAL_EXTENSIONS:
                continue
            if path.name not in {f"{filename_stem}{ext}" for ext in KNOWN_MEDIA_EXTENSIONS}:
                logger.info("Found unexpected file for download: %s", path)
                return path

        for ext in KNOWN_MEDIA_EXTENSIONS:
            expected = self.output_dir / f"{filename_stem}{ext}"
            if expected.is_file():
                return expected

        if candidates:
            logger.info("Falling back to stem match for download: %s", candidates[0])
            return candidates[0]
        return None

    def _files_with_stem(self, filename_stem: str) -> List[Path]:
        try:
            entries = sorted(self.output_dir.iterdir())
        except FileNotFoundError:
            return []
        return [entry for entry in entries if entry.is_file() and entry.name.startswith(filename_stem)]

    def _remove_partial(self, filename_stem: str) -> None:
        for path in self._files_with_stem(filename_stem):
            try:
                path.unlink()
            except OSError as error:
                logger.warning("Failed to remove partial output %s: %s", path, error)

    async def list_impersonate_targets(self) -> List[Tuple[str, str]]:
        """Ask yt-dlp which impersonation targets it can use."""
        process = await asyncio.create_subprocess_exec(
            self.yt_dlp_path,
            "--list-impersonate-targets",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise ExtractionError(stderr.decode("utf-8", errors="replace").strip(), process.returncode)
        return parse_impersonate_targets(stdout.decode("utf-8", errors="replace"))


async def _pump_lines(stream: Optional[asyncio.StreamReader], sink: List[str], queue: asyncio.Queue) -> None:
    """Read one output stream line by line into ``sink`` and ``queue``; None marks EOF."""
    try:
        if stream is None:
            return
        while True:
            raw = await stream.readline()
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            logger.debug("yt-dlp: %s", line)
            sink.append(line)
            await queue.put(line)
    finally:
        queue.put_nowait(None)


async def probe_media(ffprobe_path: str, filepath: str) -> MediaInfo:
    """Read duration and dimensions with ffprobe; zeros when probing fails."""
    try:
        process = await asyncio.create_subprocess_exec(
            ffprobe_path,
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            filepath,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, _ = await process.communicate()
    except OSError as error:
        logger.warning("ffprobe failed to start for %s: %s", filepath, error)
        return MediaInfo()

    if process.returncode != 0:
        logger.warning("ffprobe exited with %s for %s", process.returncode, filepath)
        return MediaInfo()
    return parse_probe_output(stdout.decode("utf-8", errors="replace"))


def parse_probe_output(payload: str) -> MediaInfo:
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        return MediaInfo()

    info = MediaInfo()
    try:
        info.duration = int(float(data.get("format", {}).get("duration") or 0))
    except (TypeError, ValueError):
        pass
    for stream in data.get("streams", []):
        if stream.get("codec_type") == "video":
            info.width = int(stream.get("width") or 0)
            info.height = int(stream.get("height") or 0)
            break
    return info
