import logging
import os
from pathlib import Path
from typing import Optional, Sequence, Union

import numpy as np
import matplotlib.pyplot as plt
import librosa

logger = logging.getLogger(__name__)

# --- Config ---
SAMPLE_RATE = 44100
CHUNK_SIZE = 4096  # samples per frame; frames do not overlap

AudioSource = Union[str, os.PathLike]


def read_audio(filepath: AudioSource, sample_rate: int = SAMPLE_RATE) -> np.ndarray:
    """
    Loads audio as mono float32 at sample_rate using librosa.

    Raises FileNotFoundError for a missing file; decoding errors from
    librosa are not caught.
    """
    path = Path(filepath)
    if not path.exists():
        raise FileNotFoundError(f"The file {path} does not exist")
    audio, _ = librosa.load(path, sr=sample_rate, mono=True)
    logger.debug("Loaded %s: %d samples at %d Hz", path.name, len(audio), sample_rate)
    return audio.astype(np.float32)


def to_frequency_domain(audio: Sequence[float], chunk_size: int = CHUNK_SIZE) -> np.ndarray:
    """
    Splits the waveform into consecutive chunks and transforms each one.

    Returns an array of shape (n_chunks, 2 * (chunk_size // 2 + 1)) where
    row t holds the spectrum of chunk t as interleaved real/imaginary
    values. Trailing samples that do not fill a chunk are dropped.
    """
    audio = np.asarray(audio, dtype=np.float32).ravel()
    n_bins = chunk_size // 2 + 1
    if len(audio) < chunk_size:
        return np.zeros((0, 2 * n_bins))

    # Rectangular window, no padding: one plain FFT per chunk
    S = librosa.stft(
        audio,
        n_fft=chunk_size,
        hop_length=chunk_size,
        window="boxcar",
        center=False,
    )
    spectrum = S.T
    frames = np.empty((spectrum.shape[0], 2 * n_bins), dtype=np.float64)
    frames[:, 0::2] = spectrum.real
    frames[:, 1::2] = spectrum.imag
    return frames


def viz_keypoints(keypoints: np.ndarray, title: Optional[str] = None):
    """
    Scatter plot of the per-band keypoints of every frame.
    Bands whose keypoint is 0 are left out.
    """
    keypoints = np.asarray(keypoints)
    fig, ax = plt.subplots(figsize=(10, 6))
    if keypoints.size:
        for band in range(keypoints.shape[1]):
            times = np.flatnonzero(keypoints[:, band])
            ax.scatter(times, keypoints[times, band], s=8, label=f"band {band}")
        ax.legend(loc="upper right")
    ax.set_title(title or "Keypoint Constellation")
    ax.set_xlabel("Frame")
    ax.set_ylabel("Frequency bin")
    fig.tight_layout()
    plt.show()
    return fig
