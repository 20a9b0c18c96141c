"""Encoder profiles for GIF output with ffmpeg palette argument generation."""

from pydantic import BaseModel
from typing import List, Optional, Literal

from ..core.types import DitherProfile


class EncoderProfile(BaseModel):
    """Encoder profile that generates ffmpeg palette/encode arguments."""

    dither: DitherProfile = DitherProfile.SMOOTH_GRADIENT
    max_colors: int = 256
    stats_mode: Literal["full", "diff", "single"] = "diff"
    bayer_scale: int = 3
    loop: int = 0
    lossy: Optional[int] = 80

    @staticmethod
    def smooth_gradient(lossy: Optional[int] = 80) -> "EncoderProfile":
        """
        Ordered-dither profile for photographic or gradient content.

        Args:
            lossy: gifsicle lossy level for the optimization pass (None = lossless)

        Returns:
            Smooth gradient encoder profile
        """
        return EncoderProfile(dither=DitherProfile.SMOOTH_GRADIENT, lossy=lossy)

    @staticmethod
    def less_noise(lossy: Optional[int] = 80) -> "EncoderProfile":
        """
        Undithered profile, cleanest for flat UI content.

        Args:
            lossy: gifsicle lossy level for the optimization pass (None = lossless)

        Returns:
            Less noise encoder profile
        """
        return EncoderProfile(dither=DitherProfile.LESS_NOISE, lossy=lossy)

    @staticmethod
    def for_dither(dither: DitherProfile, lossy: Optional[int] = 80) -> "EncoderProfile":
        """Profile for a request's dither tag."""
        return EncoderProfile(dither=DitherProfile(dither), lossy=lossy)

    @property
    def cache_tag(self) -> str:
        """Short tag that identifies the palette settings in cache keys."""
        return f"dither_{self.dither.value}_{self.stats_mode}"

    def dither_option(self) -> str:
        if self.dither == DitherProfile.LESS_NOISE:
            return "none"
        return f"bayer:bayer_scale={self.bayer_scale}"

    def palette_filter(self, src: str = "", dst: str = "") -> str:
        """
        Filter chain that builds a palette from a stream and maps it back.

        Args:
            src: Input pad label, including brackets (empty for a simple chain)
            dst: Output pad label, including brackets

        Returns:
            Filter graph fragment
        """
        return (
            f"{src}split[pal_a][pal_b];"
            f"[pal_a]palettegen=max_colors={self.max_colors}"
            f":stats_mode={self.stats_mode}:reserve_transparent=1[pal];"
            f"[pal_b][pal]paletteuse=dither={self.dither_option()}"
            f":diff_mode=rectangle:alpha_threshold=128{dst}"
        )

    def args(self, out_path: str) -> List[str]:
        """
        Generate ffmpeg output arguments for this encoder profile.

        Args:
            out_path: Output file path

        Returns:
            List of ffmpeg arguments
        """
        return ["-loop", str(self.loop), "-f", "gif", "-y", out_path]

    def optimize_args(self, in_path: str, out_path: str) -> List[str]:
        """gifsicle arguments for the size optimization pass."""
        args = ["-O3"]
        if self.lossy:
            args.append(f"--lossy={self.lossy}")
        args += ["--no-conserve-memory", in_path, "-o", out_path]
        return args
