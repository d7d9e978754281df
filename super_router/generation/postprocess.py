"""
Post-processing of provider output
Transcodes video to GIF with ffmpeg in a scratch directory
"""

import asyncio
import tempfile
from pathlib import Path

import structlog

from super_router.errors import PostProcessFailed
from super_router.models import Endpoint, ProcessedMedia, RawMedia, content_type_for

logger = structlog.get_logger()


class PostProcessor:
    """Turns raw provider output into the artifact served to clients"""

    def __init__(self, timeout: float = 120.0, ffmpeg_binary: str = "ffmpeg"):
        self.timeout = timeout
        self.ffmpeg_binary = ffmpeg_binary

    async def process(self, endpoint: Endpoint, raw: RawMedia) -> ProcessedMedia:
        step = endpoint.post_process
        if step.kind == "none":
            content_type = content_type_for(endpoint.output_extension)
            return ProcessedMedia(data=raw.data, content_type=content_type, extension=endpoint.output_extension)

        if step.kind == "ffmpeg_to_gif":
            data = await self._transcode(raw.data, step.input_extension, "gif", step.ffmpeg_args)
            return ProcessedMedia(data=data, content_type=content_type_for("gif"), extension="gif")

        raise PostProcessFailed(f"Unknown post-process step: {step.kind}")

    async def _transcode(self, data: bytes, input_ext: str, output_ext: str, args) -> bytes:
        """
        Run ffmpeg over the input bytes.

        The scratch directory is removed on every exit path, and the ffmpeg
        process is killed if it times out or the caller is cancelled.
        """
        with tempfile.TemporaryDirectory(prefix="super_router_") as workdir:
            input_path = Path(workdir) / f"input.{input_ext}"
            output_path = Path(workdir) / f"output.{output_ext}"
            await asyncio.to_thread(input_path.write_bytes, data)

            try:
                process = await asyncio.create_subprocess_exec(
                    self.ffmpeg_binary,
                    "-i", str(input_path),
                    *args,
                    "-y", str(output_path),
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as e:
                raise PostProcessFailed(f"Failed to start ffmpeg: {e}") from e

            try:
                _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
            except asyncio.TimeoutError as e:
                await self._kill(process)
                raise PostProcessFailed(f"ffmpeg timed out after {self.timeout}s") from e
            except asyncio.CancelledError:
                await self._kill(process)
                raise

            if process.returncode != 0:
                detail = stderr.decode(errors="replace")[-500:] if stderr else ""
                logger.error("ffmpeg_failed", returncode=process.returncode, stderr=detail)
                raise PostProcessFailed(f"ffmpeg exited with {process.returncode}")

            if not output_path.exists() or output_path.stat().st_size == 0:
                raise PostProcessFailed("ffmpeg produced no output")

            result = await asyncio.to_thread(output_path.read_bytes)

        logger.info("media_transcoded", output=output_ext, input_bytes=len(data), output_bytes=len(result))
        return result

    @staticmethod
    async def _kill(process) -> None:
        if process.returncode is None:
            process.kill()
            await process.wait()
