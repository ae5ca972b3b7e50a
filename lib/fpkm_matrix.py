"""
fpkm_matrix.py - Merge per-sample quantification files into one gene x sample matrix.

Three stages, run strictly in order:

  1. Metadata   - metadata.json (GDC file records) → {file_name: sample_id}
  2. Scan/parse - every data file named in the metadata is read line by
                  line; (gene symbol, value) pairs go into a MergeContext
  3. Write      - genes and samples sorted, one row per gene, absent
                  cells filled with NA

Values are carried through verbatim; nothing is parsed as a number.

Usage (as module):
    from fpkm_matrix import merge_fpkm_matrix
    summary = merge_fpkm_matrix("metadata.json", "file", "fpkm_matrix.tsv")

The command-line entry point is pipeline/01_merge_fpkm_matrix.py.
"""

import json
import logging
import os
from collections import Counter
from dataclasses import dataclass, field, asdict
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set, TextIO, Tuple

from tqdm import tqdm

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

# GDC STAR-Counts layout, 0-based
GENE_SYMBOL_COL = 1   # gene_name
FPKM_VALUE_COL = 7    # fpkm_unstranded

# Comment and STAR summary rows, plus the column header row
SKIP_PREFIXES = (
    "#",
    "N_unmapped",
    "N_multimapping",
    "N_noFeature",
    "N_ambiguous",
    "gene_id",
)

HEADER_LABEL = "GeneSymbol"
NA_VALUE = "NA"

# Non-UTF-8 bytes survive the read/write round trip unchanged
TEXT_ERRORS = "surrogateescape"

MISSING_FILE_EXAMPLES = 10


class MergeError(RuntimeError):
    """Fatal condition: the run cannot produce a meaningful matrix."""


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass
class FileRecord:
    """One usable metadata entry."""
    file_name: str
    sample_id: str


@dataclass
class MergeContext:
    """
    Accumulator shared by the scan, parse and write stages.

    matrix maps gene -> {sample_id: value}. sample_order holds one entry
    per data file that was opened, so a sample id resolved from two files
    appears twice.
    """
    matrix: Dict[str, Dict[str, str]] = field(default_factory=dict)
    genes: Set[str] = field(default_factory=set)
    sample_order: List[str] = field(default_factory=list)

    def add_sample(self, sample_id: str):
        self.sample_order.append(sample_id)

    def record(self, gene: str, sample_id: str, value: str):
        """Store one cell; a later value for the same cell replaces the earlier one."""
        self.matrix.setdefault(gene, {})[sample_id] = value
        self.genes.add(gene)

    def get(self, gene: str, sample_id: str) -> Optional[str]:
        return self.matrix.get(gene, {}).get(sample_id)

    def sorted_genes(self) -> List[str]:
        return sorted(self.genes)

    def sorted_samples(self) -> List[str]:
        # No deduplication: repeated ids become repeated columns
        return sorted(self.sample_order)

    def duplicate_samples(self) -> Dict[str, int]:
        counts = Counter(self.sample_order)
        return {s: n for s, n in sorted(counts.items()) if n > 1}


@dataclass
class MergeSummary:
    """Bookkeeping for one merge run."""
    metadata_mappings: int = 0
    metadata_skipped: int = 0
    directory_entries: int = 0
    matched_files: int = 0
    unreadable_files: int = 0
    missing_files: int = 0
    lines_read: int = 0
    data_lines: int = 0
    reserved_lines: int = 0
    short_lines: int = 0
    genes: int = 0
    sample_columns: int = 0
    duplicate_samples: Dict[str, int] = field(default_factory=dict)
    output_file: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


# =============================================================================
# METADATA LOADER
# =============================================================================

def safe_get(d, *keys, default=None):
    """
    Safely navigate nested dicts and lists.

    String keys index dicts, integer keys index lists; any missing
    level (wrong type, absent key, index out of range) yields default.

    >>> safe_get({"a": [{"b": 1}]}, "a", 0, "b")
    1
    >>> safe_get({"a": []}, "a", 0, "b") is None
    True
    """
    for key in keys:
        if isinstance(key, int) and isinstance(d, list):
            if not -len(d) <= key < len(d):
                return default
            d = d[key]
        elif isinstance(key, str) and isinstance(d, dict):
            d = d.get(key)
        else:
            return default
        if d is None:
            return default
    return d


def is_encodable(text: str) -> bool:
    """True if text can be written out (lone surrogates from JSON escapes cannot)."""
    try:
        text.encode("utf-8", TEXT_ERRORS)
    except UnicodeEncodeError:
        return False
    return True


def extract_file_record(entry) -> Tuple[Optional[FileRecord], Optional[str]]:
    """
    Pull (file_name, sample_id) out of one metadata entry.

    The sample id is associated_entities[0].entity_submitter_id.

    Returns:
        (FileRecord, None) if both fields are usable strings,
        otherwise (None, reason).
    """
    if not isinstance(entry, dict):
        return None, f"entry is a {type(entry).__name__}, not an object"

    file_name = safe_get(entry, "file_name")
    sample_id = safe_get(entry, "associated_entities", 0, "entity_submitter_id")

    missing = []
    if not isinstance(file_name, str) or not file_name:
        missing.append("file_name")
    if not isinstance(sample_id, str) or not sample_id:
        missing.append("associated_entities[0].entity_submitter_id")
    if missing:
        return None, "missing " + " and ".join(missing)

    for label, value in (("file_name", file_name), ("entity_submitter_id", sample_id)):
        if not is_encodable(value):
            return None, f"{label} {value!r} is not encodable as UTF-8"

    return FileRecord(file_name=file_name, sample_id=sample_id), None


def read_metadata_entries(metadata_path: str) -> list:
    """
    Parse the metadata document. It must be a JSON array.

    Raises:
        MergeError if the file cannot be read, is not valid JSON,
        or is not an array.
    """
    try:
        with open(metadata_path, encoding="utf-8") as f:
            data = json.load(f)
    except OSError as e:
        raise MergeError(f"Cannot open metadata file {metadata_path}: {e}") from e
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MergeError(f"Failed to parse metadata file {metadata_path}: {e}") from e

    if not isinstance(data, list):
        raise MergeError(
            f"Metadata file {metadata_path} must contain a JSON array of file "
            f"records, got {type(data).__name__}"
        )
    return data


def build_filename_index(entries: Iterable) -> Tuple[Dict[str, str], int]:
    """
    Build {file_name: sample_id} from metadata entries.

    Incomplete entries are logged and skipped. Duplicate file names keep
    the last sample id seen.

    Returns:
        (index, n_skipped)
    """
    index: Dict[str, str] = {}
    skipped = 0
    for i, entry in enumerate(entries):
        record, reason = extract_file_record(entry)
        if record is None:
            skipped += 1
            logger.warning(f"Incomplete metadata entry #{i} skipped: {reason}")
            continue
        index[record.file_name] = record.sample_id
    return index, skipped


def load_metadata(metadata_path: str, counts: Optional[Counter] = None) -> Dict[str, str]:
    """
    Load metadata.json into a filename -> sample id index.

    counts, if given, is updated with 'entries' and 'skipped'.

    Raises:
        MergeError on unreadable/unparseable metadata or when no entry
        yields a usable mapping.
    """
    entries = read_metadata_entries(metadata_path)
    index, skipped = build_filename_index(entries)
    if counts is not None:
        counts["entries"] += len(entries)
        counts["skipped"] += skipped
    if not index:
        raise MergeError(
            f"No file -> sample id mappings found in {metadata_path} "
            f"({len(entries)} entries, {skipped} incomplete)"
        )
    return index


# =============================================================================
# DIRECTORY SCANNER
# =============================================================================

def list_data_dir(data_dir: str) -> List[str]:
    """Directory entries in the order the filesystem reports them."""
    try:
        return os.listdir(data_dir)
    except OSError as e:
        raise MergeError(f"Cannot open data directory '{data_dir}': {e}") from e


def match_entries(
    data_dir: str,
    entries: Iterable[str],
    index: Dict[str, str],
) -> Iterator[Tuple[str, str]]:
    """Yield (file_path, sample_id) for entries named in the index."""
    for name in entries:
        sample_id = index.get(name)
        if sample_id is None:
            logger.debug(f"  Skipping file not in metadata: {name}")
            continue
        yield os.path.join(data_dir, name), sample_id


def scan_directory(
    data_dir: str,
    index: Dict[str, str],
    seen: Optional[List[str]] = None,
) -> Iterator[Tuple[str, str]]:
    """
    Enumerate data_dir and pair each file named in the index with its sample id.

    The directory is listed immediately, so an unreadable directory
    raises MergeError here rather than on first iteration. If seen is
    given, every directory entry name is appended to it.
    """
    entries = list_data_dir(data_dir)
    if seen is not None:
        seen.extend(entries)
    return match_entries(data_dir, entries, index)


# =============================================================================
# ROW PARSER
# =============================================================================

def split_fields(line: str) -> List[str]:
    """
    Split a tab-separated line, dropping trailing empty fields.

    >>> split_fields("a\\tb\\t\\t")
    ['a', 'b']
    >>> split_fields("")
    []
    """
    fields = line.split("\t")
    while fields and fields[-1] == "":
        fields.pop()
    return fields


def parse_quant_lines(
    lines: Iterable[str],
    gene_symbol_col: int = GENE_SYMBOL_COL,
    value_col: int = FPKM_VALUE_COL,
    skip_prefixes: Sequence[str] = SKIP_PREFIXES,
    counts: Optional[Counter] = None,
) -> Iterator[Tuple[str, str]]:
    """
    Yield (gene_symbol, value) from quantification file lines.

    Lines starting with a reserved prefix are skipped before splitting;
    lines with too few fields for either column are skipped silently.

    counts, if given, is updated with 'lines', 'data', 'reserved' and
    'short'.
    """
    if counts is None:
        counts = Counter()
    prefixes = tuple(skip_prefixes)
    min_fields = max(gene_symbol_col, value_col) + 1

    for line in lines:
        counts["lines"] += 1
        if line.endswith("\n"):
            line = line[:-1]
            if line.endswith("\r"):
                line = line[:-1]

        if prefixes and line.startswith(prefixes):
            counts["reserved"] += 1
            continue

        fields = split_fields(line)
        if len(fields) < min_fields:
            counts["short"] += 1
            continue

        counts["data"] += 1
        yield fields[gene_symbol_col], fields[value_col]


def open_quant_file(path: str) -> TextIO:
    # A bare CR inside a field is data, not a line break
    return open(path, encoding="utf-8", errors=TEXT_ERRORS, newline="\n")


def _read_rows(f: TextIO, **kwargs) -> Iterator[Tuple[str, str]]:
    with f:
        yield from parse_quant_lines(f, **kwargs)


def parse_quant_file(path: str, **kwargs) -> Iterator[Tuple[str, str]]:
    """
    Open one quantification file and iterate its (gene_symbol, value) pairs.

    The file is opened immediately, so OSError is raised by this call
    rather than on first iteration. Keyword arguments go to
    parse_quant_lines.
    """
    return _read_rows(open_quant_file(path), **kwargs)


# =============================================================================
# MATRIX WRITER
# =============================================================================

def format_matrix_lines(
    ctx: MergeContext,
    header_label: str = HEADER_LABEL,
    na_value: str = NA_VALUE,
) -> Iterator[str]:
    """Yield the output lines (newline-terminated), header first."""
    samples = ctx.sorted_samples()
    yield header_label + "".join(f"\t{s}" for s in samples) + "\n"

    for gene in ctx.sorted_genes():
        row = [gene]
        for sample_id in samples:
            value = ctx.get(gene, sample_id)
            row.append(na_value if value is None else value)
        yield "\t".join(row) + "\n"


def write_matrix(
    output_path: str,
    ctx: MergeContext,
    header_label: str = HEADER_LABEL,
    na_value: str = NA_VALUE,
):
    """
    Write the dense, sorted matrix as TSV.

    Raises:
        MergeError if the output cannot be created or written, or a
        label cannot be encoded. A write that fails partway leaves a
        truncated file behind.
    """
    try:
        with open(output_path, "w", encoding="utf-8", errors=TEXT_ERRORS, newline="\n") as f:
            for line in format_matrix_lines(ctx, header_label, na_value):
                f.write(line)
    except OSError as e:
        raise MergeError(f"Cannot write output file {output_path}: {e}") from e
    except UnicodeEncodeError as e:
        raise MergeError(f"Cannot encode matrix for {output_path}: {e}") from e


# =============================================================================
# PIPELINE
# =============================================================================

def merge_sample_file(
    ctx: MergeContext,
    file_path: str,
    sample_id: str,
    counts: Optional[Counter] = None,
    **parse_kwargs,
) -> bool:
    """
    Parse one data file into ctx under sample_id.

    Returns False (after a warning) if the file cannot be opened; the
    sample is then absent from the matrix.
    """
    try:
        rows = parse_quant_file(file_path, counts=counts, **parse_kwargs)
    except OSError as e:
        logger.warning(f"Cannot open {file_path}: {e}. Skipped.")
        return False

    ctx.add_sample(sample_id)
    logger.debug(f"  Processing {os.path.basename(file_path)} (sample {sample_id})")
    for gene, value in rows:
        ctx.record(gene, sample_id, value)
    return True


def report_missing_files(index: Dict[str, str], seen: Set[str]) -> int:
    """Warn about metadata file names with no counterpart in the data directory."""
    missing = sorted(name for name in index if name not in seen)
    if missing:
        shown = ", ".join(missing[:MISSING_FILE_EXAMPLES])
        more = len(missing) - MISSING_FILE_EXAMPLES
        suffix = f" (+{more} more)" if more > 0 else ""
        logger.warning(
            f"{len(missing)} metadata file(s) not found in data directory: {shown}{suffix}"
        )
    return len(missing)


def merge_fpkm_matrix(
    metadata_path: str,
    data_dir: str,
    output_path: str,
    gene_symbol_col: int = GENE_SYMBOL_COL,
    value_col: int = FPKM_VALUE_COL,
    skip_prefixes: Sequence[str] = SKIP_PREFIXES,
    header_label: str = HEADER_LABEL,
    na_value: str = NA_VALUE,
    progress: bool = False,
) -> MergeSummary:
    """
    Run the full merge: metadata → scan/parse → write.

    Raises:
        MergeError for any fatal condition. Nothing is written to
        output_path unless metadata and data directory were both usable.
    """
    summary = MergeSummary(output_file=str(output_path))

    logger.info(f"1. Parsing metadata {metadata_path} ...")
    meta_counts = Counter()
    index = load_metadata(metadata_path, counts=meta_counts)
    summary.metadata_skipped = meta_counts["skipped"]
    summary.metadata_mappings = len(index)
    logger.info(f"   Found {len(index)} file mappings in metadata")

    logger.info(f"2. Processing data files in {data_dir} ...")
    entries: List[str] = []
    matches = scan_directory(data_dir, index, seen=entries)
    summary.directory_entries = len(entries)

    ctx = MergeContext()
    counts = Counter()
    for file_path, sample_id in tqdm(matches, desc="Merging sample files",
                                     unit="file", disable=not progress):
        summary.matched_files += 1
        ok = merge_sample_file(
            ctx, file_path, sample_id, counts=counts,
            gene_symbol_col=gene_symbol_col,
            value_col=value_col,
            skip_prefixes=skip_prefixes,
        )
        if not ok:
            summary.unreadable_files += 1

    summary.missing_files = report_missing_files(index, set(entries))
    summary.lines_read = counts["lines"]
    summary.data_lines = counts["data"]
    summary.reserved_lines = counts["reserved"]
    summary.short_lines = counts["short"]
    logger.info(f"   Processed {len(ctx.sample_order)} sample files")

    summary.duplicate_samples = ctx.duplicate_samples()
    for sample_id, n in summary.duplicate_samples.items():
        logger.warning(f"Sample id {sample_id} resolved from {n} files; column repeated {n} times")

    logger.info(f"3. Writing matrix to {output_path} ...")
    write_matrix(output_path, ctx, header_label=header_label, na_value=na_value)
    summary.genes = len(ctx.genes)
    summary.sample_columns = len(ctx.sample_order)
    logger.info(f"   Wrote {summary.genes} genes x {summary.sample_columns} samples")

    return summary
