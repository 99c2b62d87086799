"""Tests for text normalization and content fingerprints."""
import hashlib

from agent_memory.fingerprint import fingerprint, normalize


class TestNormalize:
    def test_lowercases_and_collapses(self):
        assert normalize("  Hello\t\tWORLD \n again ") == "hello world again"

    def test_empty_and_none(self):
        assert normalize("") == ""
        assert normalize(None) == ""

    def test_unicode_whitespace(self):
        assert normalize("a\u00a0\u2003b") == "a b"


class TestFingerprint:
    def test_is_sha256_of_joined_fields(self):
        expected = hashlib.sha256(b"ctx|act|res").hexdigest()
        assert fingerprint("ctx", "act", "res") == expected

    def test_case_and_whitespace_insensitive(self):
        assert fingerprint("Build  Fails", "Run\nMake", "OK") == fingerprint("build fails", "run make", "ok")

    def test_matches_across_case_and_inner_whitespace(self):
        assert fingerprint("Hello World", "Do X", "OK") == fingerprint("hello   world", "do x", "ok")

    def test_fields_are_joined_before_normalizing(self):
        # a trailing space survives next to the separator
        assert fingerprint("ctx ", "act", "res") == hashlib.sha256(b"ctx |act|res").hexdigest()
        assert fingerprint("ctx ", "act", "res") != fingerprint("ctx", "act", "res")

    def test_field_order_matters(self):
        assert fingerprint("a", "b", "c") != fingerprint("c", "b", "a")

    def test_none_fields_are_empty(self):
        assert fingerprint(None, None, None) == fingerprint("", "", "")
        assert len(fingerprint(None, None, None)) == 64
