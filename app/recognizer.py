"""
Song recognition against a fingerprint index.

A query is fingerprinted frame by frame; every hash hit votes for the time
offset between the reference song and the query. A genuine match piles its
votes onto a single offset while chance collisions scatter, so a song's
score is the height of its tallest offset bin.
"""

import argparse
import logging
import os
from collections import Counter, defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from audio_fingerprinter import AudioFingerprinter, FingerprintDatabase, MatchRecord
from fingerprint import read_audio, to_frequency_domain, viz_keypoints

logger = logging.getLogger(__name__)


class RecognitionCancelled(RuntimeError):
    """Raised when a query's cancel signal is set."""


@dataclass(frozen=True)
class SongMatch:
    """A candidate song and its peak offset count."""
    song_name: str
    score: int

    def __str__(self) -> str:
        return f"{self.song_name}:   {self.score}"


class OffsetTally:
    """
    Per-query offset histogram: song_id -> (offset -> count).

    Songs keep the order in which they received their first hit.
    """

    def __init__(self):
        self._offsets: Dict[int, Counter] = defaultdict(Counter)

    def __len__(self) -> int:
        return len(self._offsets)

    def add(self, record: MatchRecord, query_time: int):
        """Count one hash hit of a reference record at query frame query_time."""
        self._offsets[record.song_id][record.time - query_time] += 1

    def offsets(self, song_id: int) -> Dict[int, int]:
        return dict(self._offsets.get(song_id, {}))

    def scores(self) -> Dict[int, int]:
        """Peak offset count of every song with at least one hit."""
        return {
            song_id: max(counts.values())
            for song_id, counts in self._offsets.items()
        }


def rank_matches(matches: Sequence[SongMatch]) -> List[SongMatch]:
    """
    Order matches by descending score.

    Equal scores come out in reverse of their input order, the same
    result as a stable ascending sort followed by a full reversal.
    """
    order = sorted(
        range(len(matches)),
        key=lambda i: (matches[i].score, i),
        reverse=True,
    )
    return [matches[i] for i in order]


class SongRecognizer:
    """
    Indexes reference songs and recognizes queries against them.

    Audio loading, the frequency transform and the index are collaborators
    and can be swapped for tests or other storage.
    """

    def __init__(
        self,
        fingerprinter: Optional[AudioFingerprinter] = None,
        database: Optional[FingerprintDatabase] = None,
        to_frequency_domain: Callable[[Any], Any] = to_frequency_domain,
        load_audio: Callable[[Any], Any] = read_audio,
    ):
        """
        Args:
            fingerprinter: Keypoint extractor and hasher
            database: Index providing lookup(hash) and song_name(song_id)
            to_frequency_domain: Waveform -> interleaved re/im frames
            load_audio: File path -> waveform
        """
        self.fingerprinter = fingerprinter or AudioFingerprinter()
        self.database = database if database is not None else FingerprintDatabase()
        self.to_frequency_domain = to_frequency_domain
        self.load_audio = load_audio

    def _frames(self, audio):
        if isinstance(audio, (str, os.PathLike)):
            audio = self.load_audio(audio)
        return self.to_frequency_domain(audio)

    def index_song(self, name: str, audio) -> int:
        """
        Fingerprint a reference song and add it to the database.

        Args:
            name: Song name reported on recognition
            audio: Waveform or path to an audio file

        Returns:
            The song's identifier
        """
        existing = self.database.song_id(name)
        if existing is not None:
            logger.info("%s already indexed, skipping", name)
            return existing

        hashes = self.fingerprinter.fingerprint(self._frames(audio))
        song_id = self.database.add_song(name, hashes)
        logger.info("Indexed %s as song %d (%d hashes)", name, song_id, len(hashes))
        return song_id

    def index_file(self, path) -> int:
        path = Path(path)
        return self.index_song(path.stem, path)

    def index_folder(self, folder, pattern: str = "*.mp3") -> int:
        """
        Index every file in folder matching pattern.

        Returns:
            Number of newly indexed songs
        """
        count = 0
        for path in sorted(Path(folder).glob(pattern)):
            if self.database.song_id(path.stem) is not None:
                continue
            self.index_file(path)
            count += 1
        logger.info("Indexed %d new songs from %s", count, folder)
        return count

    def match(self, frames: Iterable[Sequence[float]], cancel_event=None) -> List[SongMatch]:
        """
        Rank reference songs against query frames.

        Args:
            frames: Frequency frames of the query
            cancel_event: Optional object with is_set(), checked before each frame

        Returns:
            Ranked SongMatch list, best first; empty if nothing matched
        """
        tally = OffsetTally()
        hits = 0
        n_frames = 0
        for t, frame in enumerate(frames):
            if cancel_event is not None and cancel_event.is_set():
                raise RecognitionCancelled(f"recognition cancelled at frame {t}")
            points = self.fingerprinter.frame_keypoints(frame)
            for record in self.database.lookup(self.fingerprinter.hash(points)):
                tally.add(record, t)
                hits += 1
            n_frames += 1

        logger.debug(
            "Query frames: %d, hash hits: %d, candidate songs: %d",
            n_frames, hits, len(tally),
        )
        matches = [
            SongMatch(self.database.song_name(song_id), score)
            for song_id, score in tally.scores().items()
        ]
        return rank_matches(matches)

    def recognize(self, audio, cancel_event=None) -> List[str]:
        """
        Recognize a query.

        Args:
            audio: Waveform or path to an audio file
            cancel_event: Optional object with is_set(), checked before each frame

        Returns:
            "<name>:   <score>" strings, best match first
        """
        return [str(m) for m in self.match(self._frames(audio), cancel_event)]


def main(argv=None):
    parser = argparse.ArgumentParser(description="Recognize a song from a folder of reference songs.")
    parser.add_argument("songs_dir", help="Folder of reference songs")
    parser.add_argument("query", help="Audio file to recognize")
    parser.add_argument("--pattern", default="*.mp3", help="Glob for reference files")
    parser.add_argument("--plot", action="store_true", help="Plot the query's keypoints")
    parser.add_argument("--verbose", "-v", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    recognizer = SongRecognizer()
    logger.info("Loading db...")
    recognizer.index_folder(args.songs_dir, args.pattern)

    logger.info("Recognizing...")
    frames = recognizer.to_frequency_domain(recognizer.load_audio(args.query))
    if args.plot:
        viz_keypoints(recognizer.fingerprinter.determine_keypoints(frames), title=args.query)
    results = [str(m) for m in recognizer.match(frames)]

    print(f"Found {len(results)} results.")
    for i, line in enumerate(results, start=1):
        print(f"{i}: {line}")
    return results


if __name__ == "__main__":
    main()
