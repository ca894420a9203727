"""Media acquisition (yt-dlp) and feature extraction (ffmpeg)."""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yt_dlp
from yt_dlp.utils import DownloadError

from scriptflow.config import get_settings
from scriptflow.errors import AcquisitionError, ExtractionError

settings = get_settings()
logger = logging.getLogger(__name__)

# yt-dlp messages that mean the source itself is unusable, not the network
_TERMINAL_DOWNLOAD_MARKERS = (
    "unsupported url",
    "private",
    "not available",
    "unavailable",
    "login required",
    "does not pass filter",
    "no video formats",
)


@dataclass
class DownloadedMedia:
    path: Path
    duration: Optional[float]
    title: Optional[str] = None


@dataclass
class ExtractionResult:
    audio_path: Optional[Path] = None
    frame_paths: list[Path] = field(default_factory=list)

    @property
    def has_content(self) -> bool:
        return self.audio_path is not None or bool(self.frame_paths)


def _is_terminal_download_error(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _TERMINAL_DOWNLOAD_MARKERS)


class ReelDownloader:
    """Fetch a reel to local disk within duration and size bounds."""

    def __init__(
        self,
        max_duration_seconds: Optional[int] = None,
        max_filesize_mb: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        self.max_duration_seconds = max_duration_seconds or settings.max_media_duration_seconds
        self.max_filesize_bytes = (max_filesize_mb or settings.max_media_filesize_mb) * 1024 * 1024
        self.timeout = timeout or settings.download_timeout_seconds

    def _base_options(self) -> dict:
        return {
            "quiet": True,
            "no_warnings": True,
            "noplaylist": True,
            "socket_timeout": self.timeout,
        }

    def _probe(self, url: str) -> dict:
        with yt_dlp.YoutubeDL(self._base_options()) as ydl:
            return ydl.extract_info(url, download=False) or {}

    def _download(self, url: str, output_path: Path) -> None:
        options = {
            **self._base_options(),
            "format": "worst[ext=mp4]/worst",
            "outtmpl": str(output_path),
            "max_filesize": self.max_filesize_bytes,
            "overwrites": True,
        }
        with yt_dlp.YoutubeDL(options) as ydl:
            ydl.download([url])

    def check_bounds(self, info: dict) -> None:
        """Raise a non-retryable AcquisitionError if the media is out of bounds."""
        duration = info.get("duration")
        if duration is not None and duration > self.max_duration_seconds:
            raise AcquisitionError(
                f"Media too long: {duration:.0f}s > {self.max_duration_seconds}s", retryable=False
            )

        filesize = info.get("filesize") or info.get("filesize_approx")
        if filesize is not None and filesize > self.max_filesize_bytes:
            raise AcquisitionError(
                f"Media too large: {filesize} bytes > {self.max_filesize_bytes} bytes",
                retryable=False,
            )

    async def download(self, url: str, work_dir: Path) -> DownloadedMedia:
        """
        Probe the source, enforce bounds, then download the smallest mp4.

        Raises:
            AcquisitionError: retryable for network problems and timeouts,
                non-retryable for bound violations and unusable sources.
        """
        output_path = work_dir / "source.mp4"

        try:
            info = await asyncio.wait_for(asyncio.to_thread(self._probe, url), timeout=self.timeout)
            self.check_bounds(info)
            await asyncio.wait_for(
                asyncio.to_thread(self._download, url, output_path), timeout=self.timeout
            )
        except AcquisitionError:
            raise
        except asyncio.TimeoutError as e:
            raise AcquisitionError("Media download timed out", retryable=True) from e
        except DownloadError as e:
            message = str(e)
            raise AcquisitionError(
                f"Download failed: {message}", retryable=not _is_terminal_download_error(message)
            ) from e

        if not output_path.exists() or output_path.stat().st_size == 0:
            # max_filesize makes yt-dlp skip silently instead of failing
            raise AcquisitionError("Download produced no file", retryable=False)

        logger.info(f"Downloaded {url} ({output_path.stat().st_size} bytes)")
        return DownloadedMedia(path=output_path, duration=info.get("duration"), title=info.get("title"))


class MediaExtractor:
    """Turn a downloaded video into analysis inputs with ffmpeg."""

    def __init__(
        self,
        frame_count: Optional[int] = None,
        frame_width: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        self.frame_count = frame_count or settings.frame_count
        self.frame_width = frame_width or settings.frame_width
        self.timeout = timeout or settings.extraction_timeout_seconds

    async def _run_ffmpeg(self, cmd: list[str]) -> None:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise ExtractionError("ffmpeg timed out") from e

        if process.returncode != 0:
            raise ExtractionError(f"ffmpeg failed: {stderr.decode(errors='replace')[-300:]}")

    async def extract_audio(self, video_path: Path, work_dir: Path) -> Path:
        """Mono 16 kHz WAV, the format speech models expect."""
        output_path = work_dir / "audio.wav"
        await self._run_ffmpeg([
            "ffmpeg", "-y",
            "-i", str(video_path),
            "-vn",
            "-ac", "1",
            "-ar", "16000",
            "-f", "wav",
            str(output_path),
        ])
        if not output_path.exists() or output_path.stat().st_size == 0:
            raise ExtractionError("Video has no audio track")
        return output_path

    async def extract_frames(
        self,
        video_path: Path,
        work_dir: Path,
        duration: Optional[float] = None,
    ) -> list[Path]:
        """Evenly spaced JPEG frames scaled to ``frame_width``."""
        frames_dir = work_dir / "frames"
        frames_dir.mkdir(parents=True, exist_ok=True)

        fps = f"{self.frame_count}/{duration:.3f}" if duration and duration > 0 else "1"
        await self._run_ffmpeg([
            "ffmpeg", "-y",
            "-i", str(video_path),
            "-vf", f"fps={fps},scale={self.frame_width}:-2",
            "-frames:v", str(self.frame_count),
            "-q:v", "4",
            str(frames_dir / "frame_%02d.jpg"),
        ])

        frames = sorted(frames_dir.glob("frame_*.jpg"))
        if not frames:
            raise ExtractionError("No frames extracted")
        return frames

    async def extract(
        self,
        video_path: Path,
        work_dir: Path,
        mode: str,
        duration: Optional[float] = None,
    ) -> ExtractionResult:
        """
        Extract inputs for the given analysis mode.

        ``hybrid`` runs audio and frame extraction concurrently. A failed
        sub-task is logged and skipped; if everything fails the result is
        empty rather than an error.
        """
        tasks = {}
        if mode in ("audio", "hybrid"):
            tasks["audio"] = self.extract_audio(video_path, work_dir)
        if mode in ("frames", "hybrid"):
            tasks["frames"] = self.extract_frames(video_path, work_dir, duration)

        outputs = await asyncio.gather(*tasks.values(), return_exceptions=True)
        result = ExtractionResult()
        for name, output in zip(tasks.keys(), outputs):
            if isinstance(output, Exception):
                logger.warning(f"{name} extraction failed: {output}")
                continue
            if name == "audio":
                result.audio_path = output
            else:
                result.frame_paths = output

        if not result.has_content:
            logger.warning(f"No usable media extracted from {video_path.name}")
        return result


# Singleton instances
reel_downloader = ReelDownloader()
media_extractor = MediaExtractor()
