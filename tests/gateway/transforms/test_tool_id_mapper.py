"""Tests for tool call ID shortening and ToolIDMapper."""

import string

from switchback.gateway.transforms.tool_id_mapper import (
    MAX_TOOL_NAME_LENGTH,
    SHORT_ID_LENGTH,
    ToolIDMapper,
    fnv1a_32,
    sanitize_tool_name,
    shorten_tool_id,
    to_base36,
)


class TestFnv1a:
    """Tests for the FNV-1a hash."""

    def test_known_vectors(self):
        """Published FNV-1a 32-bit test vectors should match."""
        assert fnv1a_32(b"") == 0x811C9DC5
        assert fnv1a_32(b"a") == 0xE40C292C
        assert fnv1a_32(b"foobar") == 0xBF9CF968

    def test_result_fits_32_bits(self):
        """Hash output should always be an unsigned 32-bit value."""
        assert 0 <= fnv1a_32(b"x" * 1000) <= 0xFFFFFFFF


class TestBase36:
    """Tests for base36 encoding."""

    def test_small_values(self):
        """Digits and letters should be lower case base36."""
        assert to_base36(0) == "0"
        assert to_base36(35) == "z"
        assert to_base36(36) == "10"

    def test_max_32_bit_value(self):
        """The largest hash value should encode to 7 characters."""
        assert to_base36(0xFFFFFFFF) == "1z141z3"


class TestShortenToolId:
    """Tests for the deterministic short ID."""

    def test_length_is_always_nine(self):
        """Short IDs should be exactly 9 characters for any input."""
        for tool_id in ["", "a", "toolu_01A09q90qw90lq917835lq9", "x" * 500, "ünïcødé"]:
            assert len(shorten_tool_id(tool_id)) == SHORT_ID_LENGTH

    def test_alphabet(self):
        """Short IDs should only use lower case base36 characters."""
        allowed = set(string.digits + string.ascii_lowercase)
        assert set(shorten_tool_id("toolu_01A09q90qw90lq917835lq9")) <= allowed

    def test_left_padded_with_zeros(self):
        """A 7-character hash encoding should be padded with leading zeros."""
        assert shorten_tool_id("a") == "00" + to_base36(0xE40C292C)

    def test_deterministic(self):
        """Same input should always give the same short ID."""
        assert shorten_tool_id("toolu_abc") == shorten_tool_id("toolu_abc")

    def test_already_short_ids_are_hashed(self):
        """IDs that already look compliant are still hashed."""
        assert shorten_tool_id("abcdefghi") != "abcdefghi"


class TestSanitizeToolName:
    """Tests for tool name sanitizing."""

    def test_valid_names_unchanged(self):
        """Names that already match the backend pattern pass through."""
        for name in ["search", "get_weather", "Read-File", "a" * MAX_TOOL_NAME_LENGTH]:
            assert sanitize_tool_name(name) == name

    def test_invalid_characters_replaced(self):
        """Disallowed characters become underscores."""
        assert sanitize_tool_name("mcp.server/read file") == "mcp_server_read_file"

    def test_long_names_truncated(self):
        """Long names are cut to 64 characters and stay distinct."""
        first = sanitize_tool_name("x" * 80 + "a")
        second = sanitize_tool_name("x" * 80 + "b")

        assert len(first) == MAX_TOOL_NAME_LENGTH
        assert len(second) == MAX_TOOL_NAME_LENGTH
        assert first != second
        assert first.endswith("_" + shorten_tool_id("x" * 80 + "a"))

    def test_empty_name(self):
        """An empty name still yields a valid name."""
        assert sanitize_tool_name("") == "_"


class TestToolIDMapper:
    """Tests for bidirectional tool ID mapping."""

    def test_to_short_id_records_mapping(self):
        """to_short_id should record the original for the return path."""
        mapper = ToolIDMapper()

        short_id = mapper.to_short_id("toolu_01A09q90qw90lq917835lq9")

        assert short_id == shorten_tool_id("toolu_01A09q90qw90lq917835lq9")
        assert mapper.to_original_id(short_id) == "toolu_01A09q90qw90lq917835lq9"
        assert mapper.has_original_id("toolu_01A09q90qw90lq917835lq9")
        assert mapper.has_short_id(short_id)

    def test_tool_use_and_result_correlate(self):
        """A tool_result referencing an original ID should get the same short ID."""
        mapper = ToolIDMapper()

        use_id = mapper.to_short_id("toolu_xyz")
        result_id = mapper.to_short_id("toolu_xyz")

        assert use_id == result_id
        assert len(mapper) == 1

    def test_unknown_ids_pass_through(self):
        """IDs the mapper never produced should be returned unchanged."""
        mapper = ToolIDMapper()

        assert mapper.to_original_id("call_123") == "call_123"
        assert not mapper.has_short_id("call_123")

    def test_mappers_are_independent(self):
        """Each request gets its own mapper state."""
        mapper1 = ToolIDMapper()
        mapper2 = ToolIDMapper()

        short_id = mapper1.to_short_id("toolu_a")

        assert mapper2.to_original_id(short_id) == short_id
        assert len(mapper2) == 0

    def test_multiple_ids(self):
        """Distinct originals should each restore to themselves."""
        mapper = ToolIDMapper()
        originals = [f"toolu_{i:04d}" for i in range(20)]

        shorts = [mapper.to_short_id(o) for o in originals]

        assert [mapper.to_original_id(s) for s in shorts] == originals

    def test_tool_names_round_trip(self):
        """Rewritten tool names are restored on the way back."""
        mapper = ToolIDMapper()

        upstream_name = mapper.to_upstream_name("files.read")

        assert upstream_name == "files_read"
        assert mapper.to_original_name(upstream_name) == "files.read"

    def test_valid_tool_names_not_recorded(self):
        """Names that need no rewrite map to themselves both ways."""
        mapper = ToolIDMapper()

        assert mapper.to_upstream_name("search") == "search"
        assert mapper.to_original_name("search") == "search"
        assert mapper.to_original_name("unknown_tool") == "unknown_tool"
