# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "pysam",
#     "pytest",
# ]
# ///
"""
Pytest fixtures and configuration for restore_soft_clips testing.

Provides shared fixtures that build small unaligned and hard-clipped aligned
SAM/BAM files with pysam, mirroring what an aligner hands to the tool.
"""

import sys
import tempfile
from array import array
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pysam
import pytest

# Add bin directory to Python path so we can import the module under test
BIN_DIR = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(BIN_DIR))

from restore_soft_clips import reverse_complement

# 100 bp read used by the scenario tests
FULL_SEQ = (
    "ACGTTGCAAC"
    "GGATCCTTAGCATGCAAGTCGATCGGATCCAAGTTCGAACGTAGCTAGCTTGACCGATGCATCGATGCAAGTC"
    "TTGACCGGTAACGTACG"
)
FULL_QUAL = [(i * 7) % 41 for i in range(len(FULL_SEQ))]


def create_sam_header(with_reference: bool = True) -> dict[str, Any]:  # noqa: FBT001, FBT002
    """Minimal SAM header; unaligned containers carry no @SQ lines."""
    header: dict[str, Any] = {
        "HD": {"VN": "1.6", "SO": "unsorted"},
        "PG": [{"ID": "test", "PN": "restore_soft_clips_test", "VN": "0.1.0"}],
    }
    if with_reference:
        header["SQ"] = [{"SN": "test_reference", "LN": 10_000}]
    return header


def make_unaligned(
    name: str,
    seq: str,
    qual: list[int] | None = None,
    tags: list[tuple] | None = None,
    flag: int = 4,
) -> pysam.AlignedSegment:
    """Unmapped record as found in an unaligned BAM."""
    read = pysam.AlignedSegment()
    read.query_name = name
    read.flag = flag
    read.reference_id = -1
    read.reference_start = -1
    read.query_sequence = seq
    read.query_qualities = pysam.qualitystring_to_array(
        "".join(chr(q + 33) for q in (qual if qual is not None else [30] * len(seq)))
    )
    for tag in tags or []:
        read.set_tag(*tag)
    return read


def make_aligned(  # noqa: PLR0913
    name: str,
    cigar: list[tuple[int, int]],
    seq: str | None,
    qual: list[int] | None = None,
    is_reverse: bool = False,  # noqa: FBT001, FBT002
    flag_extra: int = 0,
    reference_start: int = 100,
    tags: list[tuple] | None = None,
) -> pysam.AlignedSegment:
    """Mapped, possibly hard-clipped record as emitted by an aligner."""
    read = pysam.AlignedSegment()
    read.query_name = name
    read.flag = (16 if is_reverse else 0) | flag_extra
    read.reference_id = 0
    read.reference_start = reference_start
    read.mapping_quality = 60
    read.cigartuples = cigar
    if seq is not None:
        read.query_sequence = seq
        read.query_qualities = pysam.qualitystring_to_array(
            "".join(chr(q + 33) for q in (qual if qual is not None else [20] * len(seq)))
        )
    for tag in tags or []:
        read.set_tag(*tag)
    return read


def write_alignments(
    path: Path,
    reads: list[pysam.AlignedSegment],
    with_reference: bool = True,  # noqa: FBT001, FBT002
) -> Path:
    mode = "wb" if path.suffix == ".bam" else "w"
    with pysam.AlignmentFile(str(path), mode, header=create_sam_header(with_reference)) as out:
        for read in reads:
            out.write(read)
    return path


def read_alignments(path: Path) -> list[pysam.AlignedSegment]:
    with pysam.AlignmentFile(str(path), check_sq=False) as inp:
        return list(inp.fetch(until_eof=True))


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def full_seq() -> str:
    return FULL_SEQ


@pytest.fixture
def full_qual() -> bytes:
    return bytes(FULL_QUAL)


@pytest.fixture
def unaligned_bam(temp_dir: Path) -> Path:
    """
    Unaligned source with three reads:
      r1: the 100 bp scenario read, tagged RG/XC/ML
      r2: 40 bp, tagged RG only
      r3: 30 bp, no tags
    """
    reads = [
        make_unaligned(
            "r1",
            FULL_SEQ,
            FULL_QUAL,
            tags=[("RG", "grp1", "Z"), ("XC", 7, "i"), ("ML", array("B", [10, 20, 30]))],
        ),
        make_unaligned("r2", "ACGTACGTAC" * 4, tags=[("RG", "grp2", "Z")]),
        make_unaligned("r3", "TTTTTGGGGGCCCCCAAAAATTTTTGGGGG"),
    ]
    return write_alignments(temp_dir / "unaligned.bam", reads, with_reference=False)


@pytest.fixture
def aligned_bam(temp_dir: Path) -> Path:
    """
    Hard-clipped aligner output referencing `unaligned_bam`:
      r1 primary     10H75M15H forward
      r1 supplementary 60H40M reverse (clips differ from the primary)
      r2 primary     40M with an existing RG tag
      rX primary     not in the unaligned source
      r3 primary     5H25M reverse
    """
    r1_rc = reverse_complement(FULL_SEQ)
    r3 = "TTTTTGGGGGCCCCCAAAAATTTTTGGGGG"
    r3_rc = reverse_complement(r3)
    reads = [
        make_aligned("r1", [(5, 10), (0, 75), (5, 15)], FULL_SEQ[10:85], FULL_QUAL[10:85]),
        make_aligned(
            "r1",
            [(5, 60), (0, 40)],
            r1_rc[60:],
            FULL_QUAL[::-1][60:],
            is_reverse=True,
            flag_extra=2048,
            reference_start=500,
        ),
        make_aligned("r2", [(0, 40)], "ACGTACGTAC" * 4, tags=[("RG", "stale", "Z")]),
        make_aligned("rX", [(5, 3), (0, 20)], "A" * 20),
        make_aligned("r3", [(5, 5), (0, 25)], r3_rc[5:], is_reverse=True),
    ]
    return write_alignments(temp_dir / "sample.bam", reads)


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")
