"""
Structural reconciler.

Decides whether an incoming descriptor differs from the applied one in any
way other than environment values, and carries environment values forward
from the applied descriptor into the incoming text without touching any
other line of it.

The structural comparison runs on text: a line scanner follows
`services:` -> `<service>:` -> `environment:` and replaces every entry value
inside an environment block with a placeholder. Flow-style sections
(`environment: [K=v]`, `environment: {K: v}`) are masked item by item in
place. Keys, indentation,
comments and ordering stay as written, so the comparison only sees
non-environment edits. The transfer map is built from the parsed
documents, never from the text.
"""

import logging
from dataclasses import dataclass, field
from difflib import SequenceMatcher
import re
from typing import Dict, List, Optional, Tuple, Union

import yaml

from deploy_engine.core.errors import (
    DescriptorParseError,
    EnvTransferApplicationError,
    ReconciliationParseFailure,
)
from deploy_engine.descriptor.document import (
    EnvironmentBlock,
    load_yaml,
    parse_descriptor,
    service_environment_blocks,
    service_environments,
)

logger = logging.getLogger(__name__)


ENV_PLACEHOLDER = "<ENV_VALUE>"

EnvTransferMap = Dict[str, Dict[str, str]]

PLAIN = ""
SINGLE = "'"
DOUBLE = '"'
BLOCK = "|"

_MAPPING_ENTRY = re.compile(
    r"""^(?P<key>"(?:[^"\\]|\\.)*"|'(?:[^']|'')*'|[^\s#'"\-?:,\[\]{}][^\s:]*)"""
    r"""(?P<sep>[ \t]*:)(?=[ \t]|$)(?P<rest>.*)$"""
)
_LIST_ENTRY = re.compile(r"^-(?P<gap>[ \t]+)(?P<rest>\S.*)$")
_BLOCK_HEADER = re.compile(r"^[|>][-+0-9]*(?:[ \t]+#.*)?$")


# ============================================
# SCANNED ENTRIES
# ============================================

@dataclass
class EnvEntry:
    """One environment entry as written in the text (possibly multi-line)."""

    service: str
    key: str
    start: int
    end: int
    indent: str
    form: str
    quote: str = PLAIN
    key_text: str = ""
    separator: str = ":"
    list_gap: str = " "
    comment: str = ""

    def _suffix(self) -> str:
        return f" {self.comment}" if self.comment else ""

    def masked(self) -> str:
        if self.form == "list":
            return f"{self.indent}-{self.list_gap}{self.key}={ENV_PLACEHOLDER}{self._suffix()}"
        return f"{self.indent}{self.key_text}{self.separator} {ENV_PLACEHOLDER}{self._suffix()}"

    def render(self, value: str) -> str:
        """The entry re-written with `value`, in this entry's quote style."""
        if self.form == "list":
            item = _quote(f"{self.key}={value}", self.quote)
            return f"{self.indent}-{self.list_gap}{item}{self._suffix()}"
        return f"{self.indent}{self.key_text}{self.separator} {_quote(value, self.quote)}{self._suffix()}"


@dataclass
class FlowItem:
    """
    One entry of a flow-style environment (`[K=v, ...]` or `{K: v, ...}`).

    `start`/`end` are offsets into the owning block's text: the whole item
    for the list form, the value for the mapping form. A mapping entry with
    no value has an empty span and a `prefix` to insert before the value.
    """

    service: str
    key: str
    start: int
    end: int
    form: str
    quote: str = PLAIN
    prefix: str = ""
    row: int = 0

    def masked(self) -> str:
        if self.form == "list":
            return f"{self.key}={ENV_PLACEHOLDER}"
        return f"{self.prefix}{ENV_PLACEHOLDER}"

    def render(self, value: str) -> str:
        if self.form == "list":
            return _quote(f"{self.key}={value}", self.quote, flow=True)
        return f"{self.prefix}{_quote(value, self.quote, flow=True)}"


@dataclass
class FlowEnvironment:
    """An `environment:` written as a flow collection, possibly over several lines."""

    service: str
    start: int
    end: int
    text: str
    items: List[FlowItem] = field(default_factory=list)

    def _replace(self, replacements: Dict[int, str]) -> str:
        out = self.text
        for index in sorted(replacements, key=lambda n: self.items[n].start, reverse=True):
            item = self.items[index]
            out = out[: item.start] + replacements[index] + out[item.end:]
        return out

    def masked(self) -> str:
        return self._replace({n: item.masked() for n, item in enumerate(self.items)})

    def render(self, values: Dict[str, str]) -> str:
        """The block with `values` written over its entries; later duplicates win."""
        last = {item.key: n for n, item in enumerate(self.items)}
        return self._replace({
            n: self.items[n].render(values[key]) for key, n in last.items() if key in values
        })


@dataclass
class ScannedDescriptor:
    """
    Masked view of a descriptor text.

    `masked_lines[i]` is the masked form of `chunks[i]`; a chunk is a single
    source line, every line of a multi-line environment entry, or a whole
    flow-style environment.
    """

    masked_lines: List[str] = field(default_factory=list)
    chunks: List[str] = field(default_factory=list)
    entries: List[Union[EnvEntry, FlowItem]] = field(default_factory=list)
    entry_rows: Dict[int, Union[EnvEntry, FlowEnvironment]] = field(default_factory=dict)
    flows: Dict[int, FlowEnvironment] = field(default_factory=dict)

    @property
    def masked_text(self) -> str:
        return "\n".join(self.masked_lines)

    def find(self, service: str, key: str) -> Optional[Union[EnvEntry, FlowItem]]:
        # Later duplicates win, as they do when the document is parsed.
        found = None
        for entry in self.entries:
            if entry.service == service and entry.key == key:
                found = entry
        return found


# ============================================
# QUOTING
# ============================================

def _is_plain_safe(value: str, flow: bool = False) -> bool:
    if not value or value != value.strip():
        return False
    if flow and any(c in value for c in ",[]{}"):
        return False
    if any(c in value for c in "\n\r\t"):
        return False
    if value[0] in "[]{},#&*!|>'\"%@`":
        return False
    if value[0] in "-?:" and (len(value) == 1 or value[1] == " "):
        return False
    if ": " in value or " #" in value or value.endswith(":"):
        return False
    return True


def _double_quote(value: str) -> str:
    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )
    return f'"{escaped}"'


def _quote(value: str, style: str, flow: bool = False) -> str:
    if style == SINGLE and "\n" not in value and "\r" not in value:
        return "'" + value.replace("'", "''") + "'"
    if style == PLAIN and _is_plain_safe(value, flow):
        return value
    return _double_quote(value)


def _quoted_end(text: str) -> int:
    """Index of the closing quote of the scalar opening `text`, or -1."""
    quote = text[0]
    i = 1
    while i < len(text):
        c = text[i]
        if quote == DOUBLE and c == "\\":
            i += 2
            continue
        if c == quote:
            if quote == SINGLE and i + 1 < len(text) and text[i + 1] == SINGLE:
                i += 2
                continue
            return i
        i += 1
    return -1


def _unquote(text: str) -> str:
    try:
        value = yaml.load(text, Loader=yaml.BaseLoader)
    except yaml.YAMLError:
        return text.strip("'\"")
    return value if isinstance(value, str) else text.strip("'\"")


def _split_value(rest: str) -> Tuple[str, str, bool]:
    """
    Split the text after a key into (quote style, comment, complete).

    `complete` is False when the value continues on the following lines.
    """
    if not rest:
        return PLAIN, "", True

    if rest.startswith("#"):
        return PLAIN, rest, True

    if rest[0] in (SINGLE, DOUBLE):
        end = _quoted_end(rest)
        if end < 0:
            return rest[0], "", False
        after = rest[end + 1:].strip()
        return rest[0], after if after.startswith("#") else "", True

    if _BLOCK_HEADER.match(rest):
        hash_at = rest.find("#")
        return BLOCK, rest[hash_at:] if hash_at >= 0 else "", False

    hash_at = rest.find(" #")
    if hash_at >= 0:
        return PLAIN, rest[hash_at + 1:].strip(), True
    return PLAIN, "", True


def _mapping_key(stripped: str) -> Optional[str]:
    match = _MAPPING_ENTRY.match(stripped)
    if not match:
        return None
    key = match.group("key")
    return _unquote(key) if key[0] in (SINGLE, DOUBLE) else key


def _indent_of(line: str) -> int:
    return len(line) - len(line.lstrip(" "))


def _opens_block(stripped: str) -> bool:
    match = _MAPPING_ENTRY.match(stripped)
    if not match:
        return False
    rest = match.group("rest").strip()
    return not rest or rest.startswith("#")


# ============================================
# FLOW COLLECTIONS
# ============================================

_FLOW_INDICATORS = ",[]{}"


def _skip_blank(text: str, i: int) -> int:
    while i < len(text):
        c = text[i]
        if c in " \t\n":
            i += 1
        elif c == "#" and (i == 0 or text[i - 1] in " \t\n"):
            newline = text.find("\n", i)
            i = len(text) if newline < 0 else newline
        else:
            break
    return i


def _flow_scalar(text: str, i: int) -> Optional[Tuple[int, str]]:
    """End offset and quote style of the flow scalar starting at `i`."""
    if i >= len(text):
        return None

    c = text[i]
    if c in (SINGLE, DOUBLE):
        end = _quoted_end(text[i:])
        return (i + end + 1, c) if end >= 0 else None
    if c in _FLOW_INDICATORS:
        return None

    j = i
    while j < len(text):
        c = text[j]
        if c in _FLOW_INDICATORS or c == "\n":
            break
        if c == ":" and (j + 1 == len(text) or text[j + 1] in " \t\n" + _FLOW_INDICATORS):
            break
        if c == "#" and text[j - 1] in " \t":
            break
        j += 1
    while j > i and text[j - 1] in " \t":
        j -= 1
    return (j, PLAIN) if j > i else None


def _scan_flow(text: str, opener: int, service: str) -> Optional[Tuple[int, List[FlowItem]]]:
    """Entries of the flow collection opening at `opener` and the offset after it."""
    form = "list" if text[opener] == "[" else "mapping"
    closer = "]" if form == "list" else "}"
    items: List[FlowItem] = []

    i = _skip_blank(text, opener + 1)
    while i < len(text):
        if text[i] == closer:
            return i + 1, items

        scalar = _flow_scalar(text, i)
        if scalar is None:
            return None
        end, quote = scalar
        raw = text[i:end]
        written = raw if quote == PLAIN else _unquote(raw)

        if form == "list":
            item = FlowItem(service, written.partition("=")[0].strip(), i, end, form, quote)
        else:
            colon = _skip_blank(text, end)
            if colon < len(text) and text[colon] == ":":
                value_at = _skip_blank(text, colon + 1)
                if value_at < len(text) and text[value_at] in ",}":
                    end = value_at if "\n" not in text[colon + 1:value_at] else colon + 1
                    item = FlowItem(service, written, colon + 1, end, form, prefix=" ")
                else:
                    value = _flow_scalar(text, value_at)
                    if value is None:
                        return None
                    end, value_quote = value
                    item = FlowItem(service, written, value_at, end, form, value_quote)
            else:
                item = FlowItem(service, written, end, end, form, prefix=": ")

        if not item.key:
            return None
        items.append(item)

        i = _skip_blank(text, end)
        if i < len(text) and text[i] == ",":
            i = _skip_blank(text, i + 1)
        elif i < len(text) and text[i] != closer:
            return None

    return None


def _scan_flow_environment(lines: List[str], index: int, service: str) -> Optional[FlowEnvironment]:
    """
    The flow environment opened on `lines[index]`, or None when the value is
    not a flow collection this scanner can follow entry by entry.
    """
    line = lines[index]
    indent = _indent_of(line)
    match = _MAPPING_ENTRY.match(line.strip())
    rest = match.group("rest").lstrip() if match else ""
    if not rest or rest[0] not in "[{":
        return None

    text = "\n".join(lines[index:])
    opener = line.index(rest[0], indent + match.end("sep"))
    scanned = _scan_flow(text, opener, service)
    if scanned is None:
        return None
    close, items = scanned

    end = index + text.count("\n", 0, close) + 1
    block_text = "\n".join(lines[index:end])
    trailing = block_text[close:].strip()
    if trailing and not trailing.startswith("#"):
        return None

    # Entries must match what the YAML parser reads from the same text.
    try:
        parsed = EnvironmentBlock.from_yaml_value(load_yaml(text[opener:close]))
    except DescriptorParseError:
        return None
    if list(parsed.values) != list(dict.fromkeys(item.key for item in items)):
        return None

    for item in items:
        item.row = index
    return FlowEnvironment(service=service, start=index, end=end, text=block_text, items=items)


# ============================================
# SCANNER
# ============================================

def _parse_entry(line: str, service: str, index: int) -> Tuple[Optional[EnvEntry], bool]:
    indent = line[: _indent_of(line)]
    stripped = line.strip()

    list_match = _LIST_ENTRY.match(stripped)
    if list_match:
        rest = list_match.group("rest")
        quote, comment, complete = _split_value(rest)
        if quote == BLOCK:
            return None, False
        if quote in (SINGLE, DOUBLE):
            end = _quoted_end(rest)
            item = _unquote(rest[: end + 1]) if end >= 0 else rest[1:]
        else:
            item = rest[: rest.find(" #")] if " #" in rest else rest
            item = item.strip()
            if "=" not in item and ": " in item:
                return None, True
        key = item.partition("=")[0].strip()
        if not key:
            return None, True
        entry = EnvEntry(
            service=service,
            key=key,
            start=index,
            end=index + 1,
            indent=indent,
            form="list",
            quote=quote,
            list_gap=list_match.group("gap"),
            comment=comment,
        )
        return entry, complete

    mapping_match = _MAPPING_ENTRY.match(stripped)
    if mapping_match:
        key_text = mapping_match.group("key")
        quote, comment, complete = _split_value(mapping_match.group("rest").strip())
        entry = EnvEntry(
            service=service,
            key=_mapping_key(stripped),
            start=index,
            end=index + 1,
            indent=indent,
            form="mapping",
            quote=quote,
            key_text=key_text,
            separator=mapping_match.group("sep"),
            comment=comment,
        )
        return entry, complete

    return None, True


def _continuation_end(lines: List[str], start: int, item_indent: int) -> int:
    """First line after `start` that is not part of the entry's value."""
    end = start
    j = start
    while j < len(lines):
        line = lines[j]
        if not line.strip():
            j += 1
            continue
        if _indent_of(line) <= item_indent:
            break
        j += 1
        end = j
    return end


def scan_descriptor(text: str) -> ScannedDescriptor:
    """Mask every environment value of every service in `text`."""
    scanned = ScannedDescriptor()
    lines = text.splitlines()

    in_services = False
    service: Optional[str] = None
    service_indent: Optional[int] = None
    child_indent: Optional[int] = None
    env_indent: Optional[int] = None
    item_indent: Optional[int] = None

    i = 0
    while i < len(lines):
        line = lines[i]
        stripped = line.strip()

        if not stripped or stripped.startswith("#"):
            scanned.masked_lines.append(line)
            scanned.chunks.append(line)
            i += 1
            continue

        indent = _indent_of(line)

        # -------------------------
        # Inside environment:
        # -------------------------
        if env_indent is not None:
            is_item = stripped == "-" or stripped.startswith("- ")
            if indent > env_indent or (indent == env_indent and is_item):
                if item_indent is None:
                    item_indent = indent

                entry = None
                if indent == item_indent:
                    entry, _ = _parse_entry(line, service, i)

                if entry is not None:
                    end = _continuation_end(lines, i + 1, item_indent)
                    entry.end = end
                    scanned.entry_rows[len(scanned.masked_lines)] = entry
                    scanned.entries.append(entry)
                    scanned.masked_lines.append(entry.masked())
                    scanned.chunks.append("\n".join(lines[i:end]))
                    i = end
                    continue

                scanned.masked_lines.append(line)
                scanned.chunks.append(line)
                i += 1
                continue

            env_indent = None
            item_indent = None

        # -------------------------
        # Document structure
        # -------------------------
        key = _mapping_key(stripped)

        if indent == 0:
            in_services = key == "services"
            service = service_indent = child_indent = None
        elif in_services:
            if service_indent is None or indent <= service_indent:
                if key is not None:
                    service = key
                    service_indent = indent
                    child_indent = None
            elif service is not None:
                if child_indent is None:
                    child_indent = indent
                if indent == child_indent and key == "environment":
                    if _opens_block(stripped):
                        env_indent = indent
                        item_indent = None
                    else:
                        flow = _scan_flow_environment(lines, i, service)
                        if flow is not None:
                            scanned.entry_rows[len(scanned.masked_lines)] = flow
                            scanned.flows[flow.start] = flow
                            scanned.entries.extend(flow.items)
                            scanned.masked_lines.append(flow.masked())
                            scanned.chunks.append(flow.text)
                            i = flow.end
                            continue

        scanned.masked_lines.append(line)
        scanned.chunks.append(line)
        i += 1

    return scanned


# ============================================
# RESULT
# ============================================

@dataclass
class DescriptorDiffResult:
    structurally_changed: bool
    transfer_map: EnvTransferMap = field(default_factory=dict)
    warnings: List[ReconciliationParseFailure] = field(default_factory=list)
    old_scan: Optional[ScannedDescriptor] = field(default=None, repr=False)
    new_scan: Optional[ScannedDescriptor] = field(default=None, repr=False)

    @property
    def transferable_keys(self) -> Dict[str, List[str]]:
        return {service: list(keys) for service, keys in self.transfer_map.items() if keys}

    def diff_lines(self, with_transfer: bool = True) -> List[str]:
        """
        Display diff of the two descriptors, values restored.

        Old-side lines show old values; new-side lines show new values, or
        the carried old value when `with_transfer` is set.
        """
        if self.old_scan is None or self.new_scan is None:
            return []

        new_chunks = list(self.new_scan.chunks)
        if with_transfer:
            for row, entry in self.new_scan.entry_rows.items():
                values = self.transfer_map.get(entry.service, {})
                if isinstance(entry, FlowEnvironment):
                    if values:
                        new_chunks[row] = entry.render(values)
                elif entry.key in values:
                    new_chunks[row] = entry.render(values[entry.key])

        old_chunks = self.old_scan.chunks
        out: List[str] = []

        def emit(prefix, chunk):
            out.extend(f"{prefix}{line}" for line in chunk.split("\n"))

        matcher = SequenceMatcher(
            None, self.old_scan.masked_lines, self.new_scan.masked_lines, autojunk=False
        )
        for tag, i1, i2, j1, j2 in matcher.get_opcodes():
            if tag == "equal":
                for old_chunk, new_chunk in zip(old_chunks[i1:i2], new_chunks[j1:j2]):
                    if old_chunk == new_chunk:
                        emit("  ", new_chunk)
                    else:
                        emit("- ", old_chunk)
                        emit("+ ", new_chunk)
                continue
            for chunk in old_chunks[i1:i2]:
                emit("- ", chunk)
            for chunk in new_chunks[j1:j2]:
                emit("+ ", chunk)

        return out

    def to_dict(self) -> dict:
        return {
            "structurally_changed": self.structurally_changed,
            "transferable_keys": self.transferable_keys,
            "transfer_map": self.transfer_map,
            "warnings": [str(w) for w in self.warnings],
        }


# ============================================
# RECONCILE
# ============================================

def build_transfer_map(old_document: dict, new_document: dict) -> EnvTransferMap:
    """
    Common keys of common services whose values differ -> old value.

    A bare `- KEY` item in the old descriptor has no value to carry.
    """
    old_blocks = service_environment_blocks(old_document)
    new_envs = service_environments(new_document)

    transfer: EnvTransferMap = {}
    for service, new_env in new_envs.items():
        old_block = old_blocks.get(service)
        if old_block is None:
            continue
        old_env = old_block.normalized()
        changed = {
            key: old_env[key]
            for key in new_env
            if key in old_env
            and old_block.values[key] is not None
            and old_env[key] != new_env[key]
        }
        if changed:
            transfer[service] = changed
    return transfer


def reconcile(
    old_text: Optional[str],
    new_text: Optional[str],
    compute_transfer: bool = True,
) -> DescriptorDiffResult:
    old_text = old_text or ""
    new_text = new_text or ""

    old_scan = scan_descriptor(old_text)
    new_scan = scan_descriptor(new_text)

    if old_text == new_text:
        return DescriptorDiffResult(False, old_scan=old_scan, new_scan=new_scan)

    result = DescriptorDiffResult(
        structurally_changed=old_scan.masked_text != new_scan.masked_text,
        old_scan=old_scan,
        new_scan=new_scan,
    )

    if not compute_transfer:
        return result

    try:
        old_document = parse_descriptor(old_text)
        new_document = parse_descriptor(new_text)
    except DescriptorParseError as e:
        logger.warning(f"[reconciler] falling back to text diff: {e}")
        result.warnings.append(ReconciliationParseFailure(str(e)))
        return result

    result.transfer_map = build_transfer_map(old_document, new_document)
    return result


def apply_transfer(new_text: str, transfer_map: EnvTransferMap) -> str:
    """
    Write carried values into `new_text`; every other line stays as is.

    Raises EnvTransferApplicationError when an entry cannot be located or
    the merged text does not parse back to the expected environment.
    """
    if not any(transfer_map.values()):
        return new_text

    scanned = scan_descriptor(new_text)
    replacements: Dict[int, Tuple[EnvEntry, str]] = {}
    flow_values: Dict[int, Dict[str, str]] = {}

    for service, values in transfer_map.items():
        for key, value in values.items():
            entry = scanned.find(service, key)
            if entry is None:
                raise EnvTransferApplicationError(
                    f"Cannot locate environment entry {service}.{key} in the incoming descriptor"
                )
            if isinstance(entry, FlowItem):
                flow_values.setdefault(entry.row, {})[key] = value
            else:
                replacements[entry.start] = (entry, value)

    lines = new_text.splitlines(keepends=True)
    out: List[str] = []
    i = 0
    while i < len(lines):
        if i in replacements:
            entry, value = replacements[i]
            last = lines[entry.end - 1]
            ending = last[len(last.rstrip("\r\n")):]
            out.append(entry.render(value) + ending)
            i = entry.end
        elif i in flow_values:
            flow = scanned.flows[i]
            rendered = flow.render(flow_values[i]).split("\n")
            for offset, text_line in enumerate(rendered):
                original = lines[i + offset]
                out.append(text_line + original[len(original.rstrip("\r\n")):])
            i = flow.end
        else:
            out.append(lines[i])
            i += 1

    merged = "".join(out)
    _verify_transfer(new_text, merged, transfer_map)

    logger.info(
        f"[reconciler] carried {sum(len(v) for v in transfer_map.values())} environment value(s) forward"
    )
    return merged


def _verify_transfer(new_text: str, merged: str, transfer_map: EnvTransferMap) -> None:
    try:
        expected = service_environments(parse_descriptor(new_text))
        actual = service_environments(parse_descriptor(merged))
    except DescriptorParseError as e:
        raise EnvTransferApplicationError(f"Merged descriptor does not parse: {e}") from e

    for service, values in transfer_map.items():
        expected.setdefault(service, {}).update(values)

    if actual != expected:
        raise EnvTransferApplicationError(
            "Merged descriptor environment does not match the requested transfer"
        )

    if scan_descriptor(merged).masked_text != scan_descriptor(new_text).masked_text:
        raise EnvTransferApplicationError(
            "Transfer changed lines outside environment values"
        )
