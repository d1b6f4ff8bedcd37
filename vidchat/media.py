"""
Media inputs for a turn: prompt text plus optional images / key frames,
and the subtitle cues that can be folded into a prompt.

Frame extraction and subtitle file parsing happen upstream; this module only
shapes what they produce.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace

from vidchat.errors import InsufficientFramesError

# Frame-based video understanding needs at least this many key frames
MIN_VIDEO_FRAMES = 4

DEFAULT_IMAGE_MIME = "image/jpeg"


def check_frames(frames: list[str]):
    if len(frames) < MIN_VIDEO_FRAMES:
        raise InsufficientFramesError(len(frames), MIN_VIDEO_FRAMES)


def to_source_ref(source: str, mime_type: str = DEFAULT_IMAGE_MIME) -> str:
    """
    Normalize a media source into something a provider accepts.
    URLs and data URLs pass through; bare base64 gets a data: prefix.
    """
    if source.startswith(("data:", "http://", "https://")):
        return source
    return f"data:{mime_type};base64,{source}"


@dataclass
class Subtitle:
    """One subtitle cue, times in seconds."""
    start: float
    end: float
    text: str


def format_timestamp(seconds: float) -> str:
    """Seconds → MM:SS."""
    seconds = max(0, int(seconds))
    return f"{seconds // 60:02d}:{seconds % 60:02d}"


def format_subtitles(cues: list[Subtitle], header: str = "Subtitles of the video:") -> str:
    if not cues:
        return ""
    lines = [header, ""]
    for cue in cues:
        lines.append(
            f"[{format_timestamp(cue.start)} -> {format_timestamp(cue.end)}] {cue.text}"
        )
    return "\n".join(lines) + "\n"


def subtitles_between(cues: list[Subtitle], start: float, end: float) -> list[Subtitle]:
    """Cues that start or end inside [start, end]."""
    return [
        c for c in cues
        if start <= c.start <= end or start <= c.end <= end
    ]


def subtitle_context(
    subtitles: list[Subtitle] | None = None,
    video_time: float | None = None,
    current_subtitles: list[Subtitle] | None = None,
) -> str:
    """
    Prompt text describing the subtitles and where playback currently is.
    Empty string when there is nothing to add.
    """
    sections = []
    if subtitles:
        sections.append(format_subtitles(subtitles).rstrip())
    if video_time is not None:
        lines = [f"Current video time: {format_timestamp(video_time)}"]
        if current_subtitles:
            lines.append("Subtitles around the current time:")
            lines.extend(
                f"[{format_timestamp(c.start)}] {c.text}" for c in current_subtitles
            )
        sections.append("\n".join(lines))
    return "\n\n".join(sections)


@dataclass
class MediaBundle:
    """
    A user prompt with whatever media goes along with it.

    frames: key frames standing in for a video (>= MIN_VIDEO_FRAMES for
            frame-based understanding)
    video:  a single video source (URL or data URL), for models that ingest video
    images: standalone images
    """
    text: str
    images: list[str] = field(default_factory=list)
    frames: list[str] = field(default_factory=list)
    video: str | None = None

    @property
    def has_video(self) -> bool:
        return bool(self.frames) or bool(self.video)

    @property
    def has_media(self) -> bool:
        return self.has_video or bool(self.images)

    def text_only(self) -> "MediaBundle":
        return replace(self, images=[], frames=[], video=None)

    @classmethod
    def coerce(cls, prompt: "str | MediaBundle") -> "MediaBundle":
        if isinstance(prompt, MediaBundle):
            return prompt
        return cls(text=prompt)
