"""
Audio Fingerprinting Library

Band-keypoint fingerprinting: every frame of a frequency-domain signal is
reduced to the dominant bin of each frequency band, and the lower four band
keypoints are packed into one noise-tolerant integer hash.
"""

import logging
from bisect import bisect_left
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)


class InvalidInputError(ValueError):
    """Raised when frame or keypoint data cannot be fingerprinted."""


@dataclass(frozen=True)
class FingerprintConfig:
    """
    Immutable algorithm parameters shared by indexing and querying.

    Both sides must use the same values, otherwise no hashes collide.

    Attributes:
        band_boundaries: Ascending upper bounds (inclusive) of each band
        fuzz_factor: Keypoints are rounded down to a multiple of this
        min_bin: First frequency bin considered
        max_bin: One past the last frequency bin considered
    """
    band_boundaries: Tuple[int, ...] = (40, 80, 120, 180, 300)
    fuzz_factor: int = 2
    min_bin: int = 30
    max_bin: int = 300

    def __post_init__(self):
        bounds = tuple(self.band_boundaries)
        object.__setattr__(self, "band_boundaries", bounds)
        if not bounds:
            raise ValueError("band_boundaries must not be empty")
        if any(lo >= hi for lo, hi in zip(bounds, bounds[1:])):
            raise ValueError(f"band_boundaries must be strictly increasing: {bounds}")
        if not 0 <= self.min_bin < self.max_bin:
            raise ValueError(f"invalid bin range [{self.min_bin}, {self.max_bin})")
        if bounds[-1] < self.max_bin - 1:
            raise ValueError(
                f"band_boundaries end at {bounds[-1]} but bins run up to {self.max_bin - 1}"
            )
        if self.fuzz_factor < 1:
            raise ValueError("fuzz_factor must be >= 1")

    @property
    def n_bands(self) -> int:
        return len(self.band_boundaries)

    @property
    def frame_length(self) -> int:
        """Number of interleaved re/im values a frame needs."""
        return 2 * self.max_bin


class MatchRecord(NamedTuple):
    """One occurrence of a hash in a reference song."""
    song_id: int
    time: int


class AudioFingerprinter:
    """
    Core fingerprinting algorithm.

    Extracts one keypoint per band from each frequency frame and hashes
    the keypoints of the four lowest bands.
    """

    HASH_FIELDS = 4
    # Decimal weights of bands 0..3 inside the packed hash
    HASH_WEIGHTS = (1, 10**2, 10**5, 10**8)

    def __init__(self, config: Optional[FingerprintConfig] = None):
        """
        Initialize the fingerprinter.

        Args:
            config: Band layout and fuzz factor (defaults to FingerprintConfig())
        """
        self.config = config or FingerprintConfig()
        bins = np.arange(self.config.min_bin, self.config.max_bin)
        # Contiguous (start, stop) offsets into the bin range, one per band
        band_of_bin = np.array([self.band_index(int(f)) for f in bins])
        self._band_slices = []
        for band in range(self.config.n_bands):
            idx = np.flatnonzero(band_of_bin == band)
            if idx.size:
                self._band_slices.append((band, int(idx[0]), int(idx[-1]) + 1))

    def band_index(self, freq: int) -> int:
        """Index of the first band boundary >= freq."""
        index = bisect_left(self.config.band_boundaries, freq)
        if index >= self.config.n_bands:
            raise InvalidInputError(
                f"frequency {freq} lies above the last band boundary "
                f"{self.config.band_boundaries[-1]}"
            )
        return index

    def magnitudes(self, frame: Sequence[float]) -> np.ndarray:
        """
        Log magnitudes ln(|X| + 1) of the bins in [min_bin, max_bin).

        Args:
            frame: Interleaved real/imaginary values

        Returns:
            Array of max_bin - min_bin magnitudes
        """
        data = np.asarray(frame, dtype=np.float64).ravel()
        if data.size < self.config.frame_length:
            raise InvalidInputError(
                f"frame holds {data.size} values, "
                f"{self.config.frame_length} required for bins 0-{self.config.max_bin - 1}"
            )
        lo, hi = self.config.min_bin, self.config.max_bin
        re = data[2 * lo:2 * hi:2]
        im = data[2 * lo + 1:2 * hi:2]
        return np.log(np.sqrt(re * re + im * im) + 1)

    def frame_keypoints(self, frame: Sequence[float]) -> np.ndarray:
        """Keypoints of a single frame, one per band."""
        mags = self.magnitudes(frame)
        # NaN bins never exceed the running max, so they are skipped
        mags = np.where(np.isnan(mags), 0.0, mags)
        points = np.zeros(self.config.n_bands, dtype=np.int64)
        for band, start, stop in self._band_slices:
            segment = mags[start:stop]
            # argmax returns the first occurrence, so ties go to the lower bin
            best = int(np.argmax(segment))
            if segment[best] > 0:
                points[band] = self.config.min_bin + start + best
        return points

    def determine_keypoints(self, frames: Iterable[Sequence[float]]) -> np.ndarray:
        """
        Find the dominant frequency bin of every band in every frame.

        A band's keypoint is the lowest bin holding its largest magnitude,
        or 0 when no bin in the band has a magnitude above 0.

        Args:
            frames: Frequency frames of interleaved real/imaginary values

        Returns:
            Integer array with shape (n_frames, n_bands)
        """
        rows = [self.frame_keypoints(frame) for frame in frames]
        if not rows:
            return np.zeros((0, self.config.n_bands), dtype=np.int64)
        return np.vstack(rows)

    def hash(self, points: Sequence[int]) -> int:
        """
        Pack the keypoints of bands 0-3 into one integer.

        Each keypoint is rounded down to a multiple of the fuzz factor so
        that small frequency estimation errors map to the same hash. Any
        band above the fourth is ignored. A quantized value of 100 or more
        spills into the next decimal field; the layout is kept as is so
        hashes stay comparable with existing indexes.

        Args:
            points: Non-negative keypoints of one frame (at least 4)

        Returns:
            Integer hash
        """
        if len(points) < self.HASH_FIELDS:
            raise InvalidInputError(
                f"need {self.HASH_FIELDS} keypoints to hash, got {len(points)}"
            )
        if any(int(p) < 0 for p in points[:self.HASH_FIELDS]):
            raise InvalidInputError(f"keypoints must be non-negative: {list(points)}")
        fuzz = self.config.fuzz_factor
        digest = 0
        for weight, p in zip(self.HASH_WEIGHTS, points):
            p = int(p)
            digest += (p - (p % fuzz)) * weight
        return digest

    def fingerprint(self, frames: Iterable[Sequence[float]]) -> List[Tuple[int, int]]:
        """
        Hash every frame.

        Returns:
            List of (hash, frame_index) tuples
        """
        keypoints = self.determine_keypoints(frames)
        return [(self.hash(points), t) for t, points in enumerate(keypoints)]


class FingerprintDatabase:
    """
    In-memory reference index of song fingerprints.
    """

    def __init__(self):
        """Initialize empty database."""
        self.fingerprints = defaultdict(list)  # hash -> [MatchRecord, ...]
        self.songs: Dict[int, str] = {}  # song_id -> name
        self._ids: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self.songs)

    def add_fingerprints(self, hashes: Iterable[Tuple[int, int]], song_id: int):
        """
        Add fingerprints of a song to the database.

        Args:
            hashes: (hash, time) tuples
            song_id: Identifier of the song they belong to
        """
        for digest, time in hashes:
            self.fingerprints[int(digest)].append(MatchRecord(song_id, int(time)))

    def add_song(self, name: str, hashes: Iterable[Tuple[int, int]]) -> int:
        """
        Register a song and its fingerprints.

        A name that is already indexed is left untouched.

        Returns:
            The song's identifier
        """
        if name in self._ids:
            logger.info("%s already indexed, skipping", name)
            return self._ids[name]

        song_id = len(self.songs) + 1
        self.songs[song_id] = name
        self._ids[name] = song_id
        self.add_fingerprints(hashes, song_id)
        return song_id

    def lookup(self, digest: int) -> List[MatchRecord]:
        """All (song_id, time) records stored under a hash."""
        return list(self.fingerprints.get(int(digest), ()))

    def song_name(self, song_id: int) -> str:
        return self.songs[song_id]

    def song_id(self, name: str) -> Optional[int]:
        return self._ids.get(name)

    def song_names(self) -> List[str]:
        return list(self.songs.values())

    def clear(self):
        """Clear all fingerprints and songs."""
        self.fingerprints.clear()
        self.songs.clear()
        self._ids.clear()
