"""Tests for LineSplitter."""
import pytest

from relay import LineSplitter


class TestLineSplitter:
    def test_multiple_lines_in_one_chunk(self):
        splitter = LineSplitter()
        assert splitter.feed(b'one\ntwo\nthree\n') == ['one', 'two', 'three']
        assert splitter.pending == b''

    def test_partial_line_carried_across_chunks(self):
        splitter = LineSplitter()
        assert splitter.feed(b'hel') == []
        assert splitter.pending == b'hel'
        assert splitter.feed(b'lo\nwor') == ['hello']
        assert splitter.feed(b'ld\n') == ['world']

    def test_crlf_terminators(self):
        splitter = LineSplitter()
        assert splitter.feed(b'a\r\nb\r\n') == ['a', 'b']

    def test_blank_and_whitespace_lines_dropped(self):
        splitter = LineSplitter()
        assert splitter.feed(b'\n   \nkept\n\t\n') == ['kept']

    def test_lines_are_trimmed(self):
        splitter = LineSplitter()
        assert splitter.feed(b'  padded  \n') == ['padded']

    def test_trailing_partial_is_never_emitted(self):
        splitter = LineSplitter()
        assert splitter.feed(b'done\nunterminated') == ['done']
        assert splitter.pending == b'unterminated'

    def test_invalid_utf8_is_replaced(self):
        splitter = LineSplitter()
        assert splitter.feed(b'bad \xff byte\n') == ['bad � byte']

    def test_multibyte_character_split_across_chunks(self):
        splitter = LineSplitter()
        encoded = 'héllo\n'.encode('utf-8')
        assert splitter.feed(encoded[:2]) == []
        assert splitter.feed(encoded[2:]) == ['héllo']

    def test_empty_chunk(self):
        splitter = LineSplitter()
        assert splitter.feed(b'') == []

    def test_overlong_line_truncated_and_rest_dropped(self):
        splitter = LineSplitter(max_line_bytes=8)
        assert splitter.feed(b'0123456789abcdef') == ['01234567']
        assert splitter.truncated == 1
        assert splitter.feed(b'still the same line\nnext\n') == ['next']
        assert splitter.truncated == 1

    def test_line_of_exactly_the_limit_is_kept_whole(self):
        splitter = LineSplitter(max_line_bytes=4)
        assert splitter.feed(b'abcd') == []
        assert splitter.feed(b'\n') == ['abcd']
        assert splitter.truncated == 0

    def test_memory_bounded_without_newlines(self):
        splitter = LineSplitter(max_line_bytes=64 * 1024)
        chunk = b'x' * (1024 * 1024)
        emitted = []
        for _ in range(50):
            emitted.extend(splitter.feed(chunk))
            assert len(splitter.pending) <= 64 * 1024
        assert emitted == ['x' * (64 * 1024)]
        assert splitter.truncated == 1
        assert splitter.feed(b'\nafter\n') == ['after']

    def test_limit_must_be_positive(self):
        with pytest.raises(ValueError):
            LineSplitter(max_line_bytes=0)
