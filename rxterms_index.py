#!/usr/bin/env python3
"""RxTerms index: turn a delimited RxTerms export into per-display-name search documents."""

from __future__ import annotations

import argparse
import json
import re
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

import numpy as np

REQUIRED_COLUMNS: Tuple[str, ...] = (
    "DISPLAY_NAME",
    "IS_RETIRED",
    "SUPPRESS_FOR",
    "STRENGTH",
    "NEW_DOSE_FORM",
    "DISPLAY_NAME_SYNONYM",
    "RXCUI",
)

MIXED_STRENGTH = "mixed"
NUMERIC_PREFIX_RE = re.compile(r"^\s*([\d,]+)")
RXCUI_NUMBER_RE = re.compile(r"^\s*([+-]?\d+)")


class FormatError(ValueError):
    """Input data that cannot be turned into index documents."""


class MissingDisplayNameError(FormatError):
    def __init__(self, line_number: int, line: str) -> None:
        super().__init__(f"Error on line {line_number}: {line} (missing display name).")
        self.line_number = line_number
        self.line = line


class MalformedStrengthError(FormatError):
    def __init__(self, rxcui: str, strength: str) -> None:
        super().__init__(f"Bad strength data for rxcui {rxcui}: {strength!r}")
        self.rxcui = rxcui
        self.strength = strength


class MissingDigitWidthError(RuntimeError):
    """A display-name group reached the builder without a digit width."""


def log(message: str) -> None:
    print(message, file=sys.stderr)


def build_header_map(fields: Sequence[str]) -> Dict[str, int]:
    header_map = {name: idx for idx, name in enumerate(fields)}
    missing = [name for name in REQUIRED_COLUMNS if name not in header_map]
    if missing:
        raise FormatError(f"Header is missing required columns: {', '.join(missing)}")
    return header_map


def parse_rxcui(value: str) -> Optional[int]:
    match = RXCUI_NUMBER_RE.match(value)
    return int(match.group(1)) if match else None


@dataclass
class GroupedRecord:
    strength: str
    display_name_synonym: str
    new_dose_form: str
    digit_num: Optional[int]
    rxcui: str

    def to_dict(self) -> Dict[str, object]:
        return {
            "STRENGTH": self.strength,
            "DISPLAY_NAME_SYNONYM": self.display_name_synonym,
            "NEW_DOSE_FORM": self.new_dose_form,
            "DIGIT_NUM": self.digit_num,
            "RXCUI": self.rxcui,
        }


@dataclass
class GroupAccumulator:
    """Records and padding width for one display name.

    Once a "mixed" strength is seen the group stays mixed with width 0; until
    then the width is the largest leading-digit count seen so far.
    """

    records: List[GroupedRecord] = field(default_factory=list)
    is_mixed: bool = False
    max_digit_num: Optional[int] = None

    def add(
        self,
        strength: str,
        display_name_synonym: str,
        new_dose_form: str,
        rxcui: str,
    ) -> GroupedRecord:
        digit_num: Optional[int] = None
        if not self.is_mixed:
            if strength == MIXED_STRENGTH:
                self.is_mixed = True
                self.max_digit_num = 0
            else:
                match = NUMERIC_PREFIX_RE.match(strength)
                if not match:
                    raise MalformedStrengthError(rxcui, strength)
                digit_num = len(match.group(1))
                if self.max_digit_num is None or self.max_digit_num < digit_num:
                    self.max_digit_num = digit_num

        record = GroupedRecord(
            strength=strength,
            display_name_synonym=display_name_synonym,
            new_dose_form=new_dose_form,
            digit_num=digit_num,
            rxcui=rxcui,
        )
        self.records.append(record)
        return record


class RecordAggregator:
    """Single pass over the export lines, grouping active rows by display name."""

    def __init__(self, delimiter: str = "|") -> None:
        if not delimiter:
            raise ValueError("Field delimiter must be a non-empty string.")
        self.delimiter = delimiter
        self.header_map: Optional[Dict[str, int]] = None
        self.groups: Dict[str, GroupAccumulator] = {}
        self.line_count = 0
        self.kept_rows = 0
        self.excluded_rows = 0

    def _field(self, fields: Sequence[str], name: str, line_number: int) -> str:
        assert self.header_map is not None
        idx = self.header_map[name]
        if idx >= len(fields):
            raise FormatError(
                f"Line {line_number} has {len(fields)} fields; column {name} is missing."
            )
        return fields[idx]

    def add_line(self, line: str) -> None:
        self.line_count += 1
        line = line.rstrip("\r\n")
        fields = line.split(self.delimiter)
        if self.header_map is None:
            self.header_map = build_header_map(fields)
            return
        if not line.strip():
            return

        line_number = self.line_count
        is_retired = self._field(fields, "IS_RETIRED", line_number).strip() != ""
        is_suppressed = self._field(fields, "SUPPRESS_FOR", line_number).strip() != ""
        if is_retired or is_suppressed:
            self.excluded_rows += 1
            return

        display_name = self._field(fields, "DISPLAY_NAME", line_number)
        if not display_name:
            raise MissingDisplayNameError(line_number, line)

        accumulator = self.groups.setdefault(display_name, GroupAccumulator())
        accumulator.add(
            strength=self._field(fields, "STRENGTH", line_number),
            display_name_synonym=self._field(fields, "DISPLAY_NAME_SYNONYM", line_number),
            new_dose_form=self._field(fields, "NEW_DOSE_FORM", line_number),
            rxcui=self._field(fields, "RXCUI", line_number),
        )
        self.kept_rows += 1

    def add_lines(self, lines: Iterable[str]) -> None:
        for line in lines:
            self.add_line(line)
            if self.line_count % 100000 == 0:
                log(f"[load-rxterms] lines scanned: {self.line_count:,}")

    def result(self) -> Tuple[Dict[str, List[GroupedRecord]], Dict[str, int]]:
        if self.header_map is None:
            raise FormatError("Input is empty; expected a header line.")
        groups = {name: acc.records for name, acc in self.groups.items()}
        widths = {
            name: acc.max_digit_num
            for name, acc in self.groups.items()
            if acc.max_digit_num is not None
        }
        return groups, widths


def aggregate_records(
    lines: Iterable[str], delimiter: str = "|"
) -> Tuple[Dict[str, List[GroupedRecord]], Dict[str, int]]:
    aggregator = RecordAggregator(delimiter)
    aggregator.add_lines(lines)
    return aggregator.result()


@dataclass
class IndexDocument:
    display_name: str
    display_name_synonym: Set[str] = field(default_factory=set)
    strengths_and_forms: List[str] = field(default_factory=list)
    rxcuis: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "DISPLAY_NAME": self.display_name,
            "DISPLAY_NAME_SYNONYM": sorted(self.display_name_synonym),
            "STRENGTHS_AND_FORMS": list(self.strengths_and_forms),
            "RXCUIS": list(self.rxcuis),
        }


def strength_and_form_text(record: GroupedRecord, max_digit_num: int) -> str:
    """Right-align the leading quantity so string order follows numeric order."""
    if max_digit_num == 0:
        return f"{record.strength} {record.new_dose_form}"
    padding = " " * (max_digit_num - (record.digit_num or 0))
    return f"{padding}{record.strength.strip()} {record.new_dose_form}"


def build_document(
    display_name: str, records: Sequence[GroupedRecord], max_digit_num: int
) -> IndexDocument:
    synonyms: Set[str] = set()
    text_to_rxcui: Dict[str, str] = {}
    for record in records:
        if record.display_name_synonym:
            synonyms.add(record.display_name_synonym)

        text = strength_and_form_text(record, max_digit_num)
        current = text_to_rxcui.get(text)
        if current is None:
            text_to_rxcui[text] = record.rxcui
            continue

        # Duplicate text: the lower RXCUI represents it.
        new_value = parse_rxcui(record.rxcui)
        current_value = parse_rxcui(current)
        if new_value is not None and current_value is not None and new_value < current_value:
            text_to_rxcui[text] = record.rxcui

    texts = sorted(text_to_rxcui)
    return IndexDocument(
        display_name=display_name,
        display_name_synonym=synonyms,
        strengths_and_forms=texts,
        rxcuis=[text_to_rxcui[text] for text in texts],
    )


def build_index_documents(
    groups: Dict[str, List[GroupedRecord]], widths: Dict[str, int]
) -> List[IndexDocument]:
    documents: List[IndexDocument] = []
    for display_name, records in groups.items():
        max_digit_num = widths.get(display_name)
        if max_digit_num is None:
            raise MissingDigitWidthError(
                f"No digit width recorded for display name {display_name!r}"
            )
        documents.append(build_document(display_name, records, max_digit_num))
    return documents


def summarize_documents(
    documents: Sequence[IndexDocument], widths: Dict[str, int]
) -> Dict[str, object]:
    per_doc = np.fromiter(
        (len(doc.strengths_and_forms) for doc in documents),
        dtype=np.int64,
        count=len(documents),
    )
    width_values = np.fromiter(widths.values(), dtype=np.int64, count=len(widths))
    return {
        "document_count": len(documents),
        "strength_and_form_count": int(per_doc.sum()) if per_doc.size else 0,
        "max_strengths_per_document": int(per_doc.max()) if per_doc.size else 0,
        "mean_strengths_per_document": round(float(per_doc.mean()), 4) if per_doc.size else 0.0,
        "mixed_group_count": int(np.count_nonzero(width_values == 0)),
        "max_digit_width": int(width_values.max()) if width_values.size else 0,
    }


def cmd_load(args: argparse.Namespace) -> int:
    data_file = Path(args.data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Missing RxTerms data file: {data_file}")

    log(f"[load-rxterms] reading: {data_file}")
    aggregator = RecordAggregator(args.delimiter)
    with data_file.open("r", encoding=args.encoding) as handle:
        aggregator.add_lines(handle)
    groups, widths = aggregator.result()
    log(
        f"[load-rxterms] kept rows: {aggregator.kept_rows:,}, "
        f"excluded rows: {aggregator.excluded_rows:,}, display names: {len(groups):,}"
    )

    documents = build_index_documents(groups, widths)
    documents.sort(key=lambda doc: doc.display_name)

    out_dir = Path(args.out_dir).expanduser().resolve()
    out_dir.mkdir(parents=True, exist_ok=True)
    docs_path = out_dir / f"{args.index_name}_documents.jsonl"
    meta_path = out_dir / "metadata.json"

    with docs_path.open("w", encoding="utf-8") as handle:
        for doc in documents:
            handle.write(json.dumps(doc.to_dict(), ensure_ascii=False))
            handle.write("\n")

    metadata: Dict[str, object] = {
        "created_at_utc": datetime.now(timezone.utc).isoformat(),
        "index_name": args.index_name,
        "data_file": str(data_file),
        "delimiter": args.delimiter,
        "line_count": aggregator.line_count,
        "kept_rows": aggregator.kept_rows,
        "excluded_rows": aggregator.excluded_rows,
    }
    metadata.update(summarize_documents(documents, widths))
    with meta_path.open("w", encoding="utf-8") as handle:
        json.dump(metadata, handle, indent=2)

    log("[load-rxterms] done")
    log(f"[load-rxterms] documents: {docs_path}")
    log(f"[load-rxterms] metadata: {meta_path}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Build RxTerms search documents grouped by display name."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    load_cmd = subparsers.add_parser(
        "load",
        help="Read a delimited RxTerms export and write index documents.",
    )
    load_cmd.add_argument(
        "--data-file",
        required=True,
        help="RxTerms export file; the first line must be the header row.",
    )
    load_cmd.add_argument(
        "--delimiter",
        default="|",
        help="Field delimiter used in the data file.",
    )
    load_cmd.add_argument(
        "--index-name",
        default="rxterms",
        help="Index name used to label the output documents file.",
    )
    load_cmd.add_argument(
        "--out-dir",
        default="artifacts/rxterms",
        help="Directory to write the documents and metadata.",
    )
    load_cmd.add_argument(
        "--encoding",
        default="utf-8",
        help="Text encoding of the data file.",
    )
    load_cmd.set_defaults(func=cmd_load)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
