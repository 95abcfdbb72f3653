"""
Contract between the processor and a video generation service.

A handle is whatever the client needs to identify one in-flight operation.
It may carry service-side continuation state, so every poll returns the
handle to use next. `handle_token` / `restore_handle` turn it into a string
that is persisted on the job so another worker can pick polling back up.
"""

from dataclasses import dataclass
from typing import Any, Optional, Protocol


@dataclass
class PollResult:
    done: bool
    handle: Any
    video_ref: Optional[str] = None
    error_message: Optional[str] = None


class GenerationClient(Protocol):
    def start(
        self,
        prompt: str,
        reference_images: list[str],
        duration_seconds: int,
        aspect_ratio: str,
    ) -> Any:
        """Start an operation. Raises GenerationStartError."""
        ...

    def poll(self, handle: Any) -> PollResult:
        """Check an operation once. Raises PollError on transport failure."""
        ...

    def resolve_playback_url(self, video_ref: str) -> str:
        """Turn a finished video reference into a time-limited URL. Raises PlaybackUrlError."""
        ...

    def handle_token(self, handle: Any) -> str: ...

    def restore_handle(self, token: str) -> Any: ...


class VideoPublisher(Protocol):
    def publish(self, job_id: str, video_url: str) -> str:
        """Copy a finished video somewhere permanent and return its URL."""
        ...
