#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "numpy",
#     "polars",
#     "pydantic",
#     "pysam",
# ]
# ///
"""
Restore soft clips and transfer tags onto hard-clipped alignments.

Aligners that hard-clip reads drop the clipped bases and most auxiliary tags.
This tool indexes the full reads of an unaligned SAM/BAM/CRAM once, then
streams any number of aligned files against that index in parallel, rewriting
each record so that:
  - every hard clip (H) becomes a soft clip (S) of the same length,
  - SEQ/QUAL hold the full original read (in alignment orientation),
  - a configured set of tags is copied over from the unaligned record.
One `<stem>_converted<ext>` file is written per aligned input.
"""

from __future__ import annotations

import argparse
import os
import re
import sys
from array import array
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import TYPE_CHECKING, Any, NamedTuple

import numpy as np
import polars as pl
import pysam
from loguru import logger
from pydantic import Field, ValidationError, field_validator
from pydantic.dataclasses import dataclass as pydantic_dataclass

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Mapping, Sequence

# ------------------------------- CONSTANTS -------------------------------- #

# CIGAR op codes
# 0:M, 1:I, 2:D, 3:N, 4:S, 5:H, 6:P, 7:=, 8:X
QRY_CONSUME = {0, 1, 4, 7, 8}
SOFT_CLIP = 4
HARD_CLIP = 5

# Emit a progress debug line after this many records
DEBUG_EVERY: int = 100_000

# Individual duplicate-name warnings before switching to a single total
MAX_DUPLICATE_WARNINGS: int = 10

ALIGNMENT_EXTENSIONS = (".sam", ".bam", ".cram")
OUTPUT_SUFFIX = "_converted"

TAG_CODE_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9]$")

# 4-bit nucleotide alphabet used by BAM itself; index == nibble value
BAM_NT16 = b"=ACMGRSVTWYHKDBN"
INVALID_BASE = 0xFF
_NT16_DECODE = np.frombuffer(BAM_NT16, dtype=np.uint8)
_NT16_ENCODE = np.full(256, INVALID_BASE, dtype=np.uint8)
_NT16_ENCODE[_NT16_DECODE] = np.arange(len(BAM_NT16), dtype=np.uint8)

_COMPLEMENT = str.maketrans("ACGTMRWSYKVHDBN=", "TGCAKYWSRMBDHVN=")


# --------------------------------- ERRORS ---------------------------------- #


class ClipRestoreError(Exception):
    """Base class for every error this tool raises on purpose."""


class ConfigError(ClipRestoreError):
    """Missing or invalid arguments; raised before any processing."""


class FormatError(ClipRestoreError):
    """Malformed record or a container that cannot be decoded."""


class DuplicateNameError(ClipRestoreError):
    """A read name occurs twice in the unaligned source."""


class UnmatchedReadError(ClipRestoreError):
    """An aligned record has no counterpart in the unaligned index."""


# ------------------------------- DATA TYPES -------------------------------- #


class UnmatchedPolicy(Enum):
    """What to do with an aligned record whose name is not in the index."""

    SKIP = "skip"  # drop the record, count it
    PASS_THROUGH = "pass-through"  # write it unmodified, count it
    ABORT = "abort"  # fail the whole file


class DuplicatePolicy(Enum):
    """What to do when the unaligned source repeats a read name."""

    ERROR = "error"
    KEEP_FIRST = "keep-first"


class FileState(Enum):
    """Lifecycle of one aligned input."""

    PENDING = auto()
    STREAMING = auto()
    FINALIZING = auto()
    CLOSED = auto()
    FAILED = auto()


@pydantic_dataclass(frozen=True)
class ConversionConfig:
    """Validated run configuration shared by every worker."""

    transfer_tags: tuple[str, ...] = ()
    unmatched_policy: UnmatchedPolicy = UnmatchedPolicy.PASS_THROUGH
    duplicate_policy: DuplicatePolicy = DuplicatePolicy.ERROR
    threads: int = Field(default=1, ge=1)
    reference: str | None = None

    @field_validator("transfer_tags")
    @classmethod
    def valid_tag_codes(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        bad = [code for code in v if not TAG_CODE_PATTERN.match(code)]
        if bad:
            msg = f"Invalid tag code(s) {bad}: expected two characters matching [A-Za-z][A-Za-z0-9]"
            raise ValueError(msg)
        # de-duplicate, keep first-seen order
        return tuple(dict.fromkeys(v))


class TagValue(NamedTuple):
    """One auxiliary field: its value and its single-letter BAM type."""

    value: Any
    value_type: str


class PackedRead(NamedTuple):
    """
    Compact in-memory form of one unaligned read.

    The sequence is stored two bases per byte using BAM's 4-bit alphabet,
    qualities as one byte per Phred score, and only the configured tags.
    """

    sequence: bytes
    length: int
    quality: bytes | None
    tags: tuple[tuple[str, TagValue], ...]


class UnalignedRead(NamedTuple):
    """Expanded view of an indexed read, produced on lookup."""

    name: str
    sequence: str
    quality: bytes | None
    tags: dict[str, TagValue]


class ClipConversion(NamedTuple):
    """Result of converting one record's hard clips to soft clips."""

    cigar: list[tuple[int, int]] | None
    sequence: str | None
    quality: array | None
    changed: bool
    clips_restored: bool


@dataclass
class FileSummary:
    """Per-input counters and terminal state."""

    input_path: Path
    output_path: Path
    state: FileState = FileState.PENDING
    total: int = 0
    converted: int = 0  # matched and reconstructed
    clips_restored: int = 0  # of those, how many carried hard clips
    unmatched: int = 0
    skipped: int = 0
    written: int = 0
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.state is FileState.FAILED

    def as_row(self) -> dict[str, Any]:
        return {
            "input": str(self.input_path),
            "output": str(self.output_path),
            "status": self.state.name.lower(),
            "total": self.total,
            "converted": self.converted,
            "clips_restored": self.clips_restored,
            "unmatched": self.unmatched,
            "skipped": self.skipped,
            "written": self.written,
            "error": self.error,
        }


SUMMARY_SCHEMA = {
    "input": pl.Utf8,
    "output": pl.Utf8,
    "status": pl.Utf8,
    "total": pl.Int64,
    "converted": pl.Int64,
    "clips_restored": pl.Int64,
    "unmatched": pl.Int64,
    "skipped": pl.Int64,
    "written": pl.Int64,
    "error": pl.Utf8,
}


@dataclass
class BatchReport:
    """Summaries of every aligned input, in the order they were given."""

    summaries: list[FileSummary]

    @property
    def failures(self) -> list[FileSummary]:
        return [s for s in self.summaries if s.failed]

    @property
    def ok(self) -> bool:
        return not self.failures

    def totals(self) -> dict[str, int]:
        keys = ("total", "converted", "clips_restored", "unmatched", "skipped", "written")
        return {k: sum(getattr(s, k) for s in self.summaries) for k in keys}

    def to_frame(self) -> pl.DataFrame:
        return pl.DataFrame([s.as_row() for s in self.summaries], schema=SUMMARY_SCHEMA)

    def write_tsv(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self.to_frame().write_csv(path, separator="\t")


# ----------------------------- LOGGING SETUP ------------------------------- #


def configure_logging(verbose: int, quiet: int) -> None:
    """
    Base at SUCCESS (0). Positive → louder (more verbose), negative → quieter.
    Map:
      +3.. = TRACE
      +2   = DEBUG
      +1   = INFO
       0   = SUCCESS
      -1   = WARNING
      -2   = ERROR
      <=-3 = CRITICAL
    """
    logger.remove()
    delta = verbose - quiet
    match delta:
        case d if d >= 3:  # noqa: PLR2004
            level_str = "TRACE"
        case 2:
            level_str = "DEBUG"
        case 1:
            level_str = "INFO"
        case 0:
            level_str = "SUCCESS"
        case -1:
            level_str = "WARNING"
        case -2:
            level_str = "ERROR"
        case d if d <= -3:  # noqa: PLR2004
            level_str = "CRITICAL"
    logger.add(sys.stderr, level=level_str)
    logger.debug(f"Logger configured at level: {level_str}")


# ---------------------------- CIGAR UTILITIES ------------------------------ #


class CigarOp(NamedTuple):
    """One CIGAR run: (operation code, run length)."""

    op: int
    length: int

    @staticmethod
    def from_tuple(t: tuple[int, int]) -> CigarOp:
        """Convert a raw (op, len) tuple to CigarOp."""
        op, ln = t
        return CigarOp(op, ln)

    @staticmethod
    def to_tuple(run: CigarOp) -> tuple[int, int]:
        """Convert a CigarOp back to a raw (op, len) tuple."""
        return (run.op, run.length)


class Cigar(list[CigarOp]):
    """A list of CigarOp with helpers for conversion and compaction."""

    @classmethod
    def from_pysam(cls, cig_raw: Iterable[tuple[int, int]] | None) -> Cigar | None:
        """
        Convert pysam's list[(op, len)] to a Cigar. Returns None if input is None.
        """
        if cig_raw is None:
            return None
        return cls(CigarOp.from_tuple(t) for t in cig_raw)

    def to_pysam(self) -> list[tuple[int, int]]:
        """Convert this Cigar back to list[(op, len)] for pysam."""
        return [CigarOp.to_tuple(run) for run in self]

    def push_compact(self, op: int, ln: int) -> None:
        """
        Append (op, ln), merging with the last run if `op` matches.
        Ignores non-positive lengths.
        """
        assert 0 <= op <= 8, (  # noqa: PLR2004
            f"Invalid CIGAR operation code {op}: must be 0-8 (M,I,D,N,S,H,P,=,X)"
        )
        if ln <= 0:
            return
        if self and self[-1].op == op:
            self[-1] = CigarOp(op, self[-1].length + ln)
            return
        self.append(CigarOp(op, ln))

    def query_length(self) -> int:
        """Number of bases SEQ must hold for this CIGAR (hard clips excluded)."""
        return sum(run.length for run in self if run.op in QRY_CONSUME)


def hard_clip_extents(cig: Cigar | None) -> tuple[int, int]:
    """
    Return (leading, trailing) hard-clip lengths, taken from the first and
    last CIGAR runs only. Zero where the end is not a hard clip.
    """
    if not cig:
        return 0, 0
    left = cig[0].length if cig[0].op == HARD_CLIP else 0
    right = cig[-1].length if len(cig) > 1 and cig[-1].op == HARD_CLIP else 0
    return left, right


def reverse_complement(seq: str) -> str:
    """Reverse complement over the full IUPAC alphabet BAM can store."""
    return seq.translate(_COMPLEMENT)[::-1]


# ------------------------------ CLIP CONVERSION ---------------------------- #


def convert_hard_clips(  # noqa: PLR0913
    cigar: Iterable[tuple[int, int]] | None,
    seq: str | None,
    qual: Sequence[int] | None,
    is_reverse: bool,  # noqa: FBT001
    full_seq: str,
    full_qual: bytes | None,
) -> ClipConversion:
    """
    Rebuild a hard-clipped record from the full read.

    The full read is first put into alignment orientation (reverse complement
    for reverse-strand records), then its ends are reattached around the
    aligner's own SEQ/QUAL:

        new_seq = oriented[:L] + seq + oriented[len - R:]

    where L and R are this record's own leading/trailing hard-clip lengths.
    Every H run becomes an S run of the same length. A record without hard
    clips and with a stored SEQ comes back unchanged.

    Records stored without SEQ ('*') are filled from the oriented full read;
    a missing QUAL is filled the same way. If the full read has no qualities,
    the result has none either: a partial QUAL cannot span the restored
    clips, so the aligner's stored QUAL is discarded.

    Raises
    ------
    FormatError
        If L + stored length + R differs from the full read length.
    """
    cig = Cigar.from_pysam(cigar)
    left, right = hard_clip_extents(cig)
    if not left and not right and seq is not None:
        return ClipConversion(
            None if cig is None else cig.to_pysam(), seq, qual, False, False
        )

    full_len = len(full_seq)
    if seq is not None:
        middle_len = len(seq)
    elif cig is not None:
        middle_len = cig.query_length()
    else:
        middle_len = full_len

    if left + middle_len + right != full_len:
        msg = (
            f"clip lengths do not add up to the full read: "
            f"{left}H + {middle_len} stored + {right}H != {full_len}"
        )
        raise FormatError(msg)

    oriented_seq = reverse_complement(full_seq) if is_reverse else full_seq
    tail = full_len - right

    middle_seq = seq if seq is not None else oriented_seq[left:tail]
    new_seq = oriented_seq[:left] + middle_seq + oriented_seq[tail:]

    new_qual: array | None = None
    if full_qual is None and qual is not None:
        logger.debug(
            f"Full read has no qualities; dropping {len(qual)} stored quality scores"
        )
    if full_qual is not None:
        oriented_qual = full_qual[::-1] if is_reverse else full_qual
        middle_qual = bytes(qual) if qual is not None else oriented_qual[left:tail]
        if len(middle_qual) != middle_len:
            msg = f"stored quality length {len(middle_qual)} != sequence length {middle_len}"
            raise FormatError(msg)
        new_qual = array(
            "B", b"".join((oriented_qual[:left], middle_qual, oriented_qual[tail:]))
        )

    new_cig: list[tuple[int, int]] | None = None
    if cig is not None:
        out = Cigar()
        for run in cig:
            out.push_compact(SOFT_CLIP if run.op == HARD_CLIP else run.op, run.length)
        new_cig = out.to_pysam()

    # Positive invariant: soft clips retain every original base
    assert len(new_seq) == full_len, (
        f"Reconstructed length {len(new_seq)} != full read length {full_len}"
    )
    return ClipConversion(new_cig, new_seq, new_qual, True, bool(left or right))


# ------------------------------ TAG TRANSFER ------------------------------- #


def read_tags(
    aln: pysam.AlignedSegment,
    codes: Iterable[str] | None = None,
) -> dict[str, TagValue]:
    """Typed tag mapping of `aln`, optionally restricted to `codes`."""
    wanted = None if codes is None else set(codes)
    return {
        tag: TagValue(value, value_type)
        for tag, value, value_type in aln.get_tags(with_value_type=True)
        if wanted is None or tag in wanted
    }


def transfer_tags(
    tag_codes: Iterable[str],
    source_tags: Mapping[str, TagValue],
    dest_tags: Mapping[str, TagValue],
) -> dict[str, TagValue]:
    """
    Return a copy of `dest_tags` where every code in `tag_codes` that the
    source carries is set to the source's value and type. Codes the source
    lacks, and codes outside `tag_codes`, are left as they were.
    """
    out = dict(dest_tags)
    for code in tag_codes:
        if code in source_tags:
            out[code] = source_tags[code]
    return out


def apply_tags(aln: pysam.AlignedSegment, tags: Mapping[str, TagValue]) -> None:
    """Write `tags` onto `aln`, replacing existing values."""
    for code, tag in tags.items():
        if tag.value_type == "B":
            # pysam derives the array subtype from the array's typecode
            aln.set_tag(code, tag.value)
        else:
            aln.set_tag(code, tag.value, value_type=tag.value_type)


# ----------------------------- READ INDEX ---------------------------------- #


def pack_sequence(seq: str) -> bytes:
    """Pack bases two per byte using BAM's 4-bit alphabet."""
    try:
        raw = np.frombuffer(seq.encode("ascii"), dtype=np.uint8)
    except UnicodeEncodeError as e:
        msg = f"Sequence contains non-ASCII characters: {e}"
        raise FormatError(msg) from e
    codes = _NT16_ENCODE[raw]
    if (codes == INVALID_BASE).any():
        bad = sorted({chr(b) for b in raw[codes == INVALID_BASE]})
        msg = f"Sequence contains bases outside {BAM_NT16.decode()}: {bad}"
        raise FormatError(msg)
    if codes.size % 2:
        codes = np.append(codes, np.uint8(0))
    return ((codes[0::2] << 4) | codes[1::2]).astype(np.uint8).tobytes()


def unpack_sequence(packed: bytes, length: int) -> str:
    """Inverse of `pack_sequence`."""
    nibbles = np.frombuffer(packed, dtype=np.uint8)
    codes = np.empty(nibbles.size * 2, dtype=np.uint8)
    codes[0::2] = nibbles >> 4
    codes[1::2] = nibbles & 0x0F
    return _NT16_DECODE[codes[:length]].tobytes().decode("ascii")


def pack_read(aln: pysam.AlignedSegment, tag_codes: frozenset[str]) -> PackedRead:
    """Compact one unaligned record, keeping only the configured tags."""
    seq = aln.query_sequence
    if seq is None:
        msg = f"Unaligned record '{aln.query_name}' has no sequence"
        raise FormatError(msg)
    qual = aln.query_qualities
    tags: tuple[tuple[str, TagValue], ...] = ()
    if tag_codes:
        tags = tuple(read_tags(aln, tag_codes).items())
    return PackedRead(
        sequence=pack_sequence(seq),
        length=len(seq),
        quality=None if qual is None else bytes(qual),
        tags=tags,
    )


class UnalignedReadIndex:
    """
    Read-name keyed index of full unaligned reads.

    Built once with `build`/`from_path`, read-only afterwards, so it can be
    shared by reference across worker threads without locking.
    """

    def __init__(
        self,
        reads: dict[str, PackedRead],
        tag_codes: frozenset[str] = frozenset(),
    ) -> None:
        self._reads = reads
        self.tag_codes = tag_codes
        self.packed_bytes = sum(
            len(r.sequence) + (len(r.quality) if r.quality is not None else 0)
            for r in reads.values()
        )

    def __len__(self) -> int:
        return len(self._reads)

    def lookup(self, name: str | None) -> UnalignedRead | None:
        """Expanded view of the read called `name`, or None."""
        if name is None:
            return None
        packed = self._reads.get(name)
        if packed is None:
            return None
        return UnalignedRead(
            name=name,
            sequence=unpack_sequence(packed.sequence, packed.length),
            quality=packed.quality,
            tags=dict(packed.tags),
        )

    @classmethod
    def build(
        cls,
        source: Iterable[pysam.AlignedSegment],
        tag_codes: Iterable[str] = (),
        duplicate_policy: DuplicatePolicy = DuplicatePolicy.ERROR,
    ) -> UnalignedReadIndex:
        """
        Index every primary record of `source`.

        Secondary/supplementary records are ignored: they may be clipped and
        do not carry the full read.

        Raises
        ------
        DuplicateNameError
            On a repeated name when `duplicate_policy` is ERROR.
        FormatError
            On a record without name or sequence, or with invalid bases.
        """
        codes = frozenset(tag_codes)
        reads: dict[str, PackedRead] = {}
        seen = 0
        ignored = 0
        duplicates = 0

        for aln in source:
            if aln.is_secondary or aln.is_supplementary:
                ignored += 1
                continue
            seen += 1
            name = aln.query_name
            if name is None:
                msg = f"Unaligned record #{seen} has no read name"
                raise FormatError(msg)

            if name in reads:
                duplicates += 1
                match duplicate_policy:
                    case DuplicatePolicy.ERROR:
                        msg = f"Duplicate read name in unaligned source: '{name}'"
                        raise DuplicateNameError(msg)
                    case DuplicatePolicy.KEEP_FIRST:
                        if duplicates <= MAX_DUPLICATE_WARNINGS:
                            logger.warning(f"Duplicate read name '{name}'; keeping first occurrence.")
                        continue

            reads[name] = pack_read(aln, codes)
            if seen % DEBUG_EVERY == 0:
                logger.debug(f"Index progress: {seen} records read, {len(reads)} indexed")

        if duplicates > MAX_DUPLICATE_WARNINGS:
            logger.warning(f"{duplicates} duplicate read names in total; first occurrences kept.")
        if ignored:
            logger.info(f"Ignored {ignored} secondary/supplementary records in unaligned source.")

        index = cls(reads, codes)
        logger.info(
            f"Indexed {len(index)} reads "
            f"({index.packed_bytes / (1 << 20):.1f} MiB packed sequence/quality)",
        )
        return index

    @classmethod
    def from_path(
        cls,
        path: str | Path,
        tag_codes: Iterable[str] = (),
        duplicate_policy: DuplicatePolicy = DuplicatePolicy.ERROR,
        reference: str | None = None,
    ) -> UnalignedReadIndex:
        """Open the unaligned container at `path` and index it."""
        logger.info(f"Building read index from {path}")
        with open_alignment(str(path), write=False, reference=reference) as src:
            return cls.build(
                stream_records(src, str(path)),
                tag_codes=tag_codes,
                duplicate_policy=duplicate_policy,
            )


# ----------------------------- I/O UTILITIES ------------------------------- #


def _io_mode_from_ext(path: str, write: bool) -> str:  # noqa: FBT001
    """Determine pysam open mode from filename extension."""
    lower = path.lower()
    if lower.endswith(".sam"):
        return "w" if write else "r"
    if lower.endswith(".bam"):
        return "wb" if write else "rb"
    if lower.endswith(".cram"):
        return "wc" if write else "rc"
    msg = f"Output/input must end with .sam, .bam, or .cram: {path}"
    raise ConfigError(msg)


def open_alignment(
    path: str,
    write: bool,  # noqa: FBT001
    template_or_header: pysam.AlignmentFile | dict | None = None,
    reference: str | None = None,
) -> pysam.AlignmentFile:
    """
    Open SAM/BAM/CRAM with correct mode. For CRAM, pass a reference filename.
    - If write=True and template_or_header is an AlignmentFile, we use 'template=...'
      to preserve header (lossless).
    - Otherwise, pass a header dict.
    Reads never require @SQ lines, so unaligned containers open too.
    """
    assert isinstance(path, str) and len(path) > 0, (  # noqa: PT018
        f"Path must be non-empty string, got: {path!r}"
    )

    mode = _io_mode_from_ext(path, write)

    kwargs: dict[str, Any] = {}
    if path.lower().endswith(".cram") and reference is None:
        logger.warning(
            f"Opening CRAM without explicit reference: {path}. "
            "Decoding may fail unless the reference is resolvable.",
        )
    if path.lower().endswith(".cram") and reference is not None:
        kwargs["reference_filename"] = reference

    action = "write" if write else "read"
    logger.debug(f"Opening for {action}: {path} (mode={mode})")
    try:
        if write:
            assert template_or_header is not None, (
                f"Writing to '{path}' requires template_or_header but got None"
            )
            if isinstance(template_or_header, pysam.AlignmentFile):
                return pysam.AlignmentFile(path, mode, template=template_or_header, **kwargs)
            return pysam.AlignmentFile(path, mode, header=template_or_header, **kwargs)
        return pysam.AlignmentFile(path, mode, check_sq=False, **kwargs)
    except ValueError as e:
        msg = f"Cannot {action} alignment container '{path}': {e}"
        raise FormatError(msg) from e


def stream_records(
    inp: pysam.AlignmentFile,
    label: str,
) -> Iterator[pysam.AlignedSegment]:
    """
    Yield records in file order. Decoding failures surface as FormatError;
    I/O failures (truncation, read errors) propagate as OSError.

    Uses `fetch(until_eof=True)` so SAM files without @SQ lines, the usual
    shape of an unaligned source, stream like any other container.
    """
    try:
        records = inp.fetch(until_eof=True)
    except (ValueError, NotImplementedError) as e:
        msg = f"Cannot stream records from '{label}': {e}"
        raise FormatError(msg) from e
    while True:
        try:
            aln = next(records)
        except StopIteration:
            return
        except (ValueError, NotImplementedError) as e:
            msg = f"Malformed record in '{label}': {e}"
            raise FormatError(msg) from e
        yield aln


def output_path_for(input_path: str | Path, output_dir: str | Path) -> Path:
    """`<dir>/<stem>_converted<ext>`, derived from the input basename only."""
    name = Path(input_path).name
    for ext in ALIGNMENT_EXTENSIONS:
        if name.lower().endswith(ext):
            stem, suffix = name[: -len(ext)], name[-len(ext) :]
            return Path(output_dir) / f"{stem}{OUTPUT_SUFFIX}{suffix}"
    msg = f"Aligned input must end with .sam, .bam, or .cram: {input_path}"
    raise ConfigError(msg)


class OutputWriter:
    """
    Incremental writer for one output container, headed like its input.

    Used as a context manager: a clean exit closes the file, an exception
    closes and deletes it so no partial output is left behind.
    """

    def __init__(
        self,
        path: Path,
        template: pysam.AlignmentFile,
        reference: str | None = None,
    ) -> None:
        self.path = path
        self.records_written = 0
        self._handle = open_alignment(
            str(path),
            write=True,
            template_or_header=template,
            reference=reference,
        )

    def write(self, aln: pysam.AlignedSegment) -> None:
        self._handle.write(aln)
        self.records_written += 1

    def close(self) -> None:
        if self._handle.is_open:
            self._handle.close()

    def discard(self) -> None:
        self.close()
        self.path.unlink(missing_ok=True)
        logger.debug(f"Removed partial output {self.path}")

    def __enter__(self) -> OutputWriter:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        if exc_type is None:
            self.close()
        else:
            self.discard()


# ------------------------------ CORE LOGIC --------------------------------- #


def restore_alignment_in_place(
    aln: pysam.AlignedSegment,
    read: UnalignedRead,
    tag_codes: Sequence[str] = (),
) -> bool:
    """
    Apply clip conversion, then tag transfer, to `aln`.
    Returns True if hard clips were converted.
    """
    result = convert_hard_clips(
        aln.cigartuples,
        aln.query_sequence,
        aln.query_qualities,
        aln.is_reverse,
        read.sequence,
        read.quality,
    )
    if result.changed:
        if result.cigar is not None:
            aln.cigartuples = result.cigar
        # SEQ before QUAL: pysam resets qualities when the sequence changes
        aln.query_sequence = result.sequence
        aln.query_qualities = result.quality
        logger.trace(
            f"Restored '{aln.query_name}': is_rev={aln.is_reverse}, "
            f"len={len(result.sequence)}, clips_restored={result.clips_restored}",
        )

    if tag_codes:
        before = read_tags(aln, tag_codes)
        after = transfer_tags(tag_codes, read.tags, before)
        apply_tags(aln, {code: tag for code, tag in after.items() if before.get(code) != tag})

    return result.clips_restored


def _stream_into(  # noqa: C901
    inp: pysam.AlignmentFile,
    writer: OutputWriter,
    index: UnalignedReadIndex,
    config: ConversionConfig,
    summary: FileSummary,
) -> None:
    label = str(summary.input_path)
    for aln in stream_records(inp, label):
        summary.total += 1
        if summary.total % DEBUG_EVERY == 0:
            logger.debug(
                f"{label}: total={summary.total}, converted={summary.converted}, "
                f"unmatched={summary.unmatched}",
            )

        read = index.lookup(aln.query_name)
        if read is None:
            summary.unmatched += 1
            match config.unmatched_policy:
                case UnmatchedPolicy.SKIP:
                    summary.skipped += 1
                    continue
                case UnmatchedPolicy.PASS_THROUGH:
                    writer.write(aln)
                    continue
                case UnmatchedPolicy.ABORT:
                    msg = f"Read '{aln.query_name}' in '{label}' is not in the unaligned index"
                    raise UnmatchedReadError(msg)

        try:
            if restore_alignment_in_place(aln, read, config.transfer_tags):
                summary.clips_restored += 1
        except FormatError as e:
            msg = f"Record '{aln.query_name}' in '{label}': {e}"
            raise FormatError(msg) from e
        except ValueError as e:
            # pysam rejects values it cannot encode
            msg = f"Record '{aln.query_name}' in '{label}' could not be rewritten: {e}"
            raise FormatError(msg) from e
        summary.converted += 1
        writer.write(aln)


def process_aligned_file(
    input_path: str | Path,
    index: UnalignedReadIndex,
    output_dir: str | Path,
    config: ConversionConfig,
) -> FileSummary:
    """
    Stream one aligned container through the index into its output.

    Never raises for per-file failures: I/O and format errors, unmatched
    reads under the ABORT policy, and any unexpected exception from pysam end
    in state FAILED with `error` set and the partial output removed. Success
    ends in state CLOSED.
    """
    input_path = Path(input_path)
    summary = FileSummary(input_path, Path(output_dir) / input_path.name)
    try:
        summary.output_path = output_path_for(input_path, output_dir)
        with open_alignment(str(input_path), write=False, reference=config.reference) as inp:
            with OutputWriter(summary.output_path, inp, reference=config.reference) as writer:
                summary.state = FileState.STREAMING
                _stream_into(inp, writer, index, config, summary)
                summary.state = FileState.FINALIZING
            summary.written = writer.records_written
    except (OSError, ClipRestoreError) as e:
        summary.state = FileState.FAILED
        summary.error = f"{type(e).__name__}: {e}"
        logger.error(f"Failed {input_path}: {summary.error}")
        return summary
    except Exception as e:  # noqa: BLE001
        # Anything else pysam or the record rewrite raises stays confined to this file
        summary.state = FileState.FAILED
        summary.error = f"{type(e).__name__}: {e}"
        logger.opt(exception=e).error(f"Unexpected failure on {input_path}: {summary.error}")
        return summary

    summary.state = FileState.CLOSED
    logger.success(
        f"{input_path.name} -> {summary.output_path.name} | total={summary.total} "
        f"converted={summary.converted} clips_restored={summary.clips_restored} "
        f"unmatched={summary.unmatched} skipped={summary.skipped}",
    )
    return summary


def run_batch(
    aligned_paths: Sequence[str | Path],
    index: UnalignedReadIndex,
    output_dir: str | Path,
    config: ConversionConfig,
) -> BatchReport:
    """
    Process every aligned input against the shared index on a thread pool.
    One file failing never stops the others.
    """
    workers = max(1, min(config.threads, len(aligned_paths)))
    logger.info(f"Processing {len(aligned_paths)} aligned file(s) with {workers} worker(s)")
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="restore") as pool:
        futures = [
            pool.submit(process_aligned_file, path, index, output_dir, config)
            for path in aligned_paths
        ]
    return BatchReport([f.result() for f in futures])


def log_report(report: BatchReport) -> None:
    """Final per-run summary: totals, then any failed files."""
    totals = report.totals()
    logger.info(
        f"Run totals: files={len(report.summaries)}, failed={len(report.failures)}, "
        + ", ".join(f"{k}={v}" for k, v in totals.items()),
    )
    for failed in report.failures:
        logger.error(f"FAILED {failed.input_path}: {failed.error}")


# --------------------------------- CLI ------------------------------------- #


def parse_tag_list(raw: str | None) -> tuple[str, ...]:
    """'RG, MM,ML' -> ('RG', 'MM', 'ML'); empty items dropped."""
    if not raw:
        return ()
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def validate_inputs(
    unaligned: str,
    aligned: Sequence[str],
    output_dir: str,
) -> None:
    """Check paths before the (expensive) index build."""
    for path in (unaligned, *aligned):
        if not Path(path).is_file():
            msg = f"Input file does not exist: {path}"
            raise ConfigError(msg)
        _io_mode_from_ext(path, write=False)

    outputs: dict[Path, str] = {}
    for path in aligned:
        out = output_path_for(path, output_dir)
        if out in outputs:
            msg = f"Aligned inputs '{outputs[out]}' and '{path}' would both write {out}"
            raise ConfigError(msg)
        outputs[out] = path

    try:
        Path(output_dir).mkdir(parents=True, exist_ok=True)
    except OSError as e:
        msg = f"Cannot create output directory '{output_dir}': {e}"
        raise ConfigError(msg) from e


def config_from_args(args: argparse.Namespace) -> ConversionConfig:
    threads = args.threads if args.threads is not None else (os.cpu_count() or 1)
    try:
        return ConversionConfig(
            transfer_tags=parse_tag_list(args.transfer_tags),
            unmatched_policy=UnmatchedPolicy(args.unmatched),
            duplicate_policy=DuplicatePolicy(args.duplicate_names),
            threads=threads,
            reference=args.reference,
        )
    except ValidationError as e:
        msg = f"Invalid configuration: {e}"
        raise ConfigError(msg) from e


def build_parser() -> argparse.ArgumentParser:
    """
    CLI:
      -v / -vv / -vvv : increase verbosity (INFO -> DEBUG -> TRACE)
      -q / -qq / -qqq : decrease verbosity (WARNING -> ERROR -> CRITICAL)
    (Mutually exclusive.)
    """
    p = argparse.ArgumentParser(
        description=(
            "Convert hard clips to soft clips in aligned SAM/BAM/CRAM files by restoring\n"
            "the full read from an unaligned container, and copy selected tags over.\n"
            "Writes <name>_converted.<ext> per aligned input into --output-dir."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # I/O
    p.add_argument(
        "--unaligned-bam",
        required=True,
        help="Unaligned SAM/BAM/CRAM holding the full reads",
    )
    p.add_argument(
        "--aligned-bams",
        nargs="+",
        required=True,
        help="Hard-clipped aligned SAM/BAM/CRAM files to convert",
    )
    p.add_argument(
        "--output-dir",
        required=True,
        help="Directory for converted files (created if missing)",
    )
    p.add_argument(
        "--ref",
        dest="reference",
        default=None,
        help="Reference FASTA (required/recommended for CRAM read/write)",
    )
    p.add_argument(
        "--summary-tsv",
        default=None,
        help="Optional path for a per-file summary table (TSV)",
    )

    # Conversion policy
    policy_group = p.add_argument_group("Conversion Policy")
    policy_group.add_argument(
        "--transfer-tags",
        default="",
        help="Comma-separated tag codes to copy from unaligned to aligned records (default: none)",
    )
    policy_group.add_argument(
        "--unmatched",
        choices=[m.value for m in UnmatchedPolicy],
        default=UnmatchedPolicy.PASS_THROUGH.value,
        help=(
            "Aligned records without an unaligned match:\n"
            "  skip: drop them\n"
            "  pass-through: write them unmodified (default)\n"
            "  abort: fail the file"
        ),
    )
    policy_group.add_argument(
        "--duplicate-names",
        choices=[m.value for m in DuplicatePolicy],
        default=DuplicatePolicy.ERROR.value,
        help="Repeated read names in the unaligned source: fail, or keep the first and warn",
    )

    # Scheduling
    p.add_argument(
        "-t",
        "--threads",
        type=int,
        default=None,
        help="Files processed in parallel (default: number of CPUs)",
    )

    # Verbosity: -v/-vv/-vvv or -q/-qq/-qqq (mutually exclusive)
    g = p.add_mutually_exclusive_group()
    g.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (use up to -vvv).",
    )
    g.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Decrease verbosity (use up to -qqq).",
    )

    return p


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)
    logger.info("Starting soft-clip restoration run.")

    try:
        config = config_from_args(args)
        validate_inputs(args.unaligned_bam, args.aligned_bams, args.output_dir)
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(2)
    logger.debug(f"ConversionConfig: {config}")

    # Barrier: nothing is streamed until the whole unaligned source is indexed
    try:
        index = UnalignedReadIndex.from_path(
            args.unaligned_bam,
            tag_codes=config.transfer_tags,
            duplicate_policy=config.duplicate_policy,
            reference=config.reference,
        )
    except (OSError, ClipRestoreError) as e:
        logger.error(f"Index build failed for {args.unaligned_bam}: {e}")
        sys.exit(1)
    except Exception as e:  # noqa: BLE001
        logger.opt(exception=e).error(
            f"Index build failed for {args.unaligned_bam}: {type(e).__name__}: {e}"
        )
        sys.exit(1)

    report = run_batch(args.aligned_bams, index, args.output_dir, config)
    log_report(report)

    if args.summary_tsv:
        try:
            report.write_tsv(Path(args.summary_tsv))
        except (OSError, pl.exceptions.PolarsError) as e:
            logger.error(f"Could not write summary table: {e}")
            sys.exit(1)

    if not report.ok:
        logger.error(f"{len(report.failures)} of {len(report.summaries)} file(s) failed.")
        sys.exit(1)
    logger.info("Soft-clip restoration run complete.")


if __name__ == "__main__":
    main()
