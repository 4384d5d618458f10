"""Tool call ID normalization between client and backend formats.

IMPORTANT: This must be request-scoped (created per /v1/messages call).
Multi-turn tool conversations require consistent ID mapping within a request.

Clients issue arbitrary-length IDs (e.g. toolu_01AbC...).
Some backends only accept IDs of exactly 9 alphanumeric characters.

The mapper maintains bidirectional mappings so that:
1. When a tool_use or tool_result from the client carries toolu_XXX, we send
   the derived 9-character ID to the backend, and both ends of the tool call
   still correlate.
2. When the backend answers with a tool call ID we produced, we restore the
   client's original ID. IDs we never produced pass through unchanged.

Short IDs are base36(FNV-1a 32-bit(id)) padded to 9 characters. Two distinct
originals hashing to the same short ID within one request are not detected;
with a 32-bit hash space this is accepted as a bounded risk.

Tool names get the same treatment: strict backends only accept names matching
^[a-zA-Z0-9_-]{1,64}$, so other names are rewritten on the way out and
restored when the backend calls the tool.
"""

import re
from dataclasses import dataclass, field

SHORT_ID_LENGTH = 9
MAX_TOOL_NAME_LENGTH = 64

_VALID_TOOL_NAME = re.compile(r"[a-zA-Z0-9_-]{1,64}")
_INVALID_TOOL_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_-]")

_FNV32_OFFSET_BASIS = 0x811C9DC5
_FNV32_PRIME = 0x01000193
_BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


def fnv1a_32(data: bytes) -> int:
    """32-bit FNV-1a hash."""
    h = _FNV32_OFFSET_BASIS
    for byte in data:
        h ^= byte
        h = (h * _FNV32_PRIME) & 0xFFFFFFFF
    return h


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36_DIGITS[rem])
    return "".join(reversed(digits))


def shorten_tool_id(tool_id: str) -> str:
    """Derive the deterministic 9-character ID for a tool call ID.

    Args:
        tool_id: Any tool call ID (e.g., "toolu_01A09q90qw90lq917835lq9")

    Returns:
        Lower-case base36 string of exactly 9 characters (e.g., "001t2k9xq")
    """
    encoded = to_base36(fnv1a_32(tool_id.encode("utf-8")))
    return encoded.rjust(SHORT_ID_LENGTH, "0")[-SHORT_ID_LENGTH:]


def sanitize_tool_name(name: str) -> str:
    """Rewrite a tool name into the form strict backends accept.

    Valid names are returned unchanged. Otherwise every disallowed character
    becomes "_", and names longer than 64 characters keep their head plus a
    hash of the full name so distinct long names stay distinct.
    """
    if _VALID_TOOL_NAME.fullmatch(name):
        return name
    cleaned = _INVALID_TOOL_NAME_CHARS.sub("_", name) or "_"
    if len(cleaned) > MAX_TOOL_NAME_LENGTH:
        suffix = shorten_tool_id(name)
        cleaned = f"{cleaned[: MAX_TOOL_NAME_LENGTH - len(suffix) - 1]}_{suffix}"
    return cleaned


@dataclass
class ToolIDMapper:
    """Bidirectional mapping of tool call IDs and tool names.

    Must be created fresh for each request and passed through
    the translator chain.

    Example usage:
        mapper = ToolIDMapper()

        # When sending client history to the backend:
        short_id = mapper.to_short_id("toolu_01A09q90qw90lq917835lq9")

        # When returning a backend tool call to the client:
        original_id = mapper.to_original_id(short_id)
    """

    _to_short: dict[str, str] = field(default_factory=dict)
    _to_original: dict[str, str] = field(default_factory=dict)
    _to_upstream_name: dict[str, str] = field(default_factory=dict)
    _to_original_name: dict[str, str] = field(default_factory=dict)

    def to_short_id(self, original_id: str) -> str:
        """Convert a client tool call ID to its short backend form.

        Records the mapping the first time an ID is seen.
        """
        short_id = self._to_short.get(original_id)
        if short_id is None:
            short_id = shorten_tool_id(original_id)
            self._to_short[original_id] = short_id
            self._to_original.setdefault(short_id, original_id)
        return short_id

    def to_original_id(self, short_id: str) -> str:
        """Restore the client ID for a backend tool call ID.

        IDs this mapper never produced are returned unchanged.
        """
        return self._to_original.get(short_id, short_id)

    def to_upstream_name(self, name: str) -> str:
        """Sanitize a tool name for the backend, remembering rewritten names."""
        upstream_name = self._to_upstream_name.get(name)
        if upstream_name is None:
            upstream_name = sanitize_tool_name(name)
            self._to_upstream_name[name] = upstream_name
            if upstream_name != name:
                self._to_original_name.setdefault(upstream_name, name)
        return upstream_name

    def to_original_name(self, upstream_name: str) -> str:
        """Restore the client tool name for a name the backend called."""
        return self._to_original_name.get(upstream_name, upstream_name)

    def has_original_id(self, original_id: str) -> bool:
        """Check if a client ID has been shortened in this request."""
        return original_id in self._to_short

    def has_short_id(self, short_id: str) -> bool:
        """Check if a backend ID was produced by this mapper."""
        return short_id in self._to_original

    def __len__(self) -> int:
        return len(self._to_short)
