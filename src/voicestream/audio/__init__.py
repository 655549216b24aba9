"""Audio codecs: raw PCM conversion and container encoders."""

from . import pcm
from .containers import to_ogg, to_ogg_async, to_wav

__all__ = ["pcm", "to_ogg", "to_ogg_async", "to_wav"]
