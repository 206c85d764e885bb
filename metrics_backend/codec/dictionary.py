"""
Dictionary Codec

Reversible tokenization of record field names and values.

A dictionary is built by scanning a corpus of dataset pages and assigning
dense integer codes (from 1, first-seen order) to every field name and every
stringified value. Encoding swaps names/values for their codes; decoding
swaps them back through a reverse index. Tokens missing from the dictionary
pass through unchanged in both directions.

A missed token that would read back as a code is rewritten on encode: a
missed integer value is stored in its string form, and a missed field name
that is a digit string (or already starts with ``~``) gets a ``~`` prefix
that decode strips again.

Values are stringified before lookup, so a numeric value decodes to its
string form (``12.5`` -> ``"12.5"``). Types are not reconstructed.
"""

import json
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Union

import structlog

from metrics_backend.errors import DictionaryError

logger = structlog.get_logger(__name__)

Record = Dict[str, Any]
DatasetPage = Union[List[Any], Dict[str, Any]]

RECORDS_SUFFIX = "_records.json"
NAME_ESCAPE = "~"


def stringify(value: Any) -> str:
    """Dictionary lookup form of a scalar: strings as-is, everything else as JSON"""
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def is_envelope(item: Any) -> bool:
    """``{"key": ..., "value": [records]}`` page wrapper"""
    return isinstance(item, dict) and "key" in item and isinstance(item.get("value"), list)


def iter_records(page: Any) -> Iterator[Record]:
    """
    Yield every record of a dataset page.

    Accepts a bare list of records, a single envelope, or a list of
    envelopes (the archived ``*_records.json`` layout).
    """
    if page is None:
        return
    if is_envelope(page):
        yield from page["value"]
        return
    if isinstance(page, list):
        for item in page:
            if is_envelope(item):
                yield from item["value"]
            elif isinstance(item, dict):
                yield item


def _as_code(token: Any) -> Optional[int]:
    if isinstance(token, bool):
        return None
    if isinstance(token, int):
        return token
    if isinstance(token, str) and token.isascii() and token.isdigit():
        return int(token)
    return None


def _escape_name(name: Any) -> Any:
    if _as_code(name) is not None or (isinstance(name, str) and name.startswith(NAME_ESCAPE)):
        return f"{NAME_ESCAPE}{name}"
    return name


@dataclass(frozen=True)
class Dictionary:
    """
    Code tables for field names and values.

    Immutable; pair it with the exact corpus snapshot it was built from.
    """
    key_codes: Mapping[str, int]
    value_codes: Mapping[str, int]
    _key_tokens: Mapping[int, str] = field(init=False, repr=False, compare=False)
    _value_tokens: Mapping[int, str] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "key_codes", MappingProxyType(dict(self.key_codes)))
        object.__setattr__(self, "value_codes", MappingProxyType(dict(self.value_codes)))
        object.__setattr__(
            self, "_key_tokens", MappingProxyType({code: name for name, code in self.key_codes.items()})
        )
        object.__setattr__(
            self, "_value_tokens", MappingProxyType({code: token for token, code in self.value_codes.items()})
        )

    def __len__(self) -> int:
        return len(self.key_codes) + len(self.value_codes)

    def to_json(self) -> Dict[str, Dict[str, int]]:
        """Persisted form: ``{"keys": {...}, "values": {...}}``"""
        return {"keys": dict(self.key_codes), "values": dict(self.value_codes)}

    def encode(self, record: Record, misses: Optional[Counter] = None) -> Record:
        """Replace field names and values with their codes"""
        encoded = {}
        for name, value in record.items():
            key_code = self.key_codes.get(name)
            value_code = self.value_codes.get(stringify(value))
            if misses is not None:
                misses["keys"] += key_code is None
                misses["values"] += value_code is None
            if value_code is None and _as_code(value) is not None:
                value = stringify(value)
            encoded[key_code if key_code is not None else _escape_name(name)] = (
                value_code if value_code is not None else value
            )
        return encoded

    def decode(self, record: Record, misses: Optional[Counter] = None) -> Record:
        """Inverse of ``encode``; unknown codes pass through"""
        decoded = {}
        for key, value in record.items():
            if isinstance(key, str) and key.startswith(NAME_ESCAPE):
                key_code = None
                name = key[len(NAME_ESCAPE):]
            else:
                # JSON turns integer keys into digit strings
                key_code = _as_code(key)
                name = self._key_tokens.get(key_code, key) if key_code is not None else key

            value_code = value if isinstance(value, int) and not isinstance(value, bool) else None
            token = self._value_tokens.get(value_code, value) if value_code is not None else value

            if misses is not None:
                misses["keys"] += key_code not in self._key_tokens
                misses["values"] += value_code not in self._value_tokens
            decoded[name] = token
        return decoded


def build_dictionary(corpus: Iterable[DatasetPage]) -> Dictionary:
    """
    Scan a corpus and assign codes in page -> record -> field order.

    Args:
        corpus: Dataset pages (lists of records or envelopes)

    Returns:
        Dictionary with dense codes starting at 1
    """
    key_codes: Dict[str, int] = {}
    value_codes: Dict[str, int] = {}
    records = 0

    for page in corpus:
        for record in iter_records(page):
            records += 1
            for name, value in record.items():
                if name not in key_codes:
                    key_codes[name] = len(key_codes) + 1
                token = stringify(value)
                if token not in value_codes:
                    value_codes[token] = len(value_codes) + 1

    logger.info(
        "Dictionary built",
        records=records,
        key_codes=len(key_codes),
        value_codes=len(value_codes),
    )
    return Dictionary(key_codes=key_codes, value_codes=value_codes)


def encode(record: Record, dictionary: Dictionary) -> Record:
    """Encode one record"""
    return dictionary.encode(record)


def decode(record: Record, dictionary: Dictionary) -> Record:
    """Decode one record"""
    return dictionary.decode(record)


def _map_page(page: DatasetPage, fn) -> DatasetPage:
    if is_envelope(page):
        return {**page, "value": [fn(record) for record in page["value"]]}
    if isinstance(page, list):
        return [
            {**item, "value": [fn(record) for record in item["value"]]}
            if is_envelope(item)
            else fn(item)
            for item in page
        ]
    return page


def encode_page(page: DatasetPage, dictionary: Dictionary) -> DatasetPage:
    """Encode every record of a page, keeping envelope keys intact"""
    misses: Counter = Counter()
    encoded = _map_page(page, lambda record: dictionary.encode(record, misses))
    if misses["keys"] or misses["values"]:
        logger.debug("Dictionary misses passed through", direction="encode", **misses)
    return encoded


def decode_page(page: DatasetPage, dictionary: Dictionary) -> DatasetPage:
    """Decode every record of a page, keeping envelope keys intact"""
    misses: Counter = Counter()
    decoded = _map_page(page, lambda record: dictionary.decode(record, misses))
    if misses["keys"] or misses["values"]:
        logger.debug("Dictionary misses passed through", direction="decode", **misses)
    return decoded


def save_dictionary(dictionary: Dictionary, path: Union[str, Path]) -> Path:
    """Write the dictionary side file"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(dictionary.to_json(), indent=2), encoding="utf-8")
    logger.info("Dictionary saved", path=str(path), size=len(dictionary))
    return path


def load_dictionary(path: Union[str, Path]) -> Dictionary:
    """
    Read a dictionary side file.

    Raises:
        DictionaryError: If the file is missing or not a valid dictionary
    """
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise DictionaryError(f"Cannot read dictionary file: {path}", cause=e) from e

    if not isinstance(data, dict) or not isinstance(data.get("keys"), dict) or not isinstance(data.get("values"), dict):
        raise DictionaryError(f"Dictionary file must contain 'keys' and 'values' objects: {path}")

    try:
        keys = {str(name): int(code) for name, code in data["keys"].items()}
        values = {str(token): int(code) for token, code in data["values"].items()}
    except (TypeError, ValueError) as e:
        raise DictionaryError(f"Dictionary codes must be integers: {path}", cause=e) from e

    return Dictionary(key_codes=keys, value_codes=values)


class DictionaryCodec:
    """
    File workflow around a dictionary.

    Works on archived ``*_records.json`` files (lists of ``{key, value}``
    envelopes) in a data directory.

    Example:
        codec = DictionaryCodec("data", "output")
        dictionary = codec.build_from_files("metric1", "metadata.json")
        codec.transform_files("metric1", dictionary, "transformed")
        codec.regenerate_files("metric1", dictionary, "transformed", "regenerated")
    """

    def __init__(self, data_dir: Union[str, Path], output_dir: Union[str, Path]):
        self.data_dir = Path(data_dir)
        self.output_dir = Path(output_dir)

    def find_files(self, pattern: str, directory: Optional[Path] = None) -> List[Path]:
        """Record files whose name contains ``pattern``, sorted by name"""
        directory = directory or self.data_dir
        if not directory.is_dir():
            return []
        return sorted(
            p for p in directory.iterdir()
            if p.is_file() and pattern in p.name and p.name.endswith(RECORDS_SUFFIX)
        )

    def _require_files(self, pattern: str, directory: Optional[Path] = None) -> List[Path]:
        files = self.find_files(pattern, directory)
        if not files:
            raise DictionaryError(
                f"No matching files found with pattern: {pattern}",
                details={"directory": str(directory or self.data_dir)},
            )
        return files

    @staticmethod
    def _read(path: Path) -> Any:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise DictionaryError(f"Cannot read record file: {path}", cause=e) from e

    @staticmethod
    def _write(path: Path, pages: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(pages, indent=2), encoding="utf-8")

    def build_from_files(self, pattern: str, dictionary_file: Optional[str] = None) -> Dictionary:
        """Build a dictionary from every matching record file, optionally saving it"""
        files = self._require_files(pattern)
        logger.info("Building dictionary from files", pattern=pattern, files=len(files))

        dictionary = build_dictionary(self._read(path) for path in files)

        if dictionary_file:
            save_dictionary(dictionary, self.data_dir / dictionary_file)
        return dictionary

    def transform_files(self, pattern: str, dictionary: Dictionary, output_folder: str) -> List[Path]:
        """Write encoded copies of matching files to ``output_dir/output_folder``"""
        target = self.output_dir / output_folder
        written = []

        for path in self._require_files(pattern):
            out = target / path.name
            self._write(out, encode_page(self._read(path), dictionary))
            written.append(out)
            logger.info("Encoded file written", source=str(path), output=str(out))

        return written

    def regenerate_files(
        self,
        pattern: str,
        dictionary: Dictionary,
        input_folder: str,
        output_folder: str,
    ) -> List[Path]:
        """Decode previously encoded files back to their original tokens"""
        source_dir = self.output_dir / input_folder
        target = self.output_dir / output_folder
        written = []

        for path in self._require_files(pattern, source_dir):
            out = target / f"regenerated_{path.name}"
            self._write(out, decode_page(self._read(path), dictionary))
            written.append(out)
            logger.info("Regenerated file written", source=str(path), output=str(out))

        return written
