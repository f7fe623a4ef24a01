"""
Unit tests for routeros_codec.py - RouterOS API wire format.
"""

import pytest

from router_errors import ProtocolError
from routeros_codec import (
    REPLY_DONE,
    REPLY_FATAL,
    REPLY_RE,
    REPLY_TRAP,
    Sentence,
    SentenceParser,
    build_words,
    decode,
    decode_length,
    decode_words,
    encode,
    encode_length,
    encode_sentence,
    encode_word,
    parse_reply_word,
)


class TestLengthPrefix:
    """Tests for the variable-length integer."""

    @pytest.mark.parametrize("length,expected", [
        (0, b"\x00"),
        (0x7F, b"\x7f"),
        (0x80, b"\x80\x80"),
        (0x3FFF, b"\xbf\xff"),
        (0x4000, b"\xc0\x40\x00"),
        (0x1FFFFF, b"\xdf\xff\xff"),
        (0x200000, b"\xe0\x20\x00\x00"),
        (0xFFFFFFF, b"\xef\xff\xff\xff"),
        (0x10000000, b"\xf0\x10\x00\x00\x00"),
    ])
    def test_encode_boundaries(self, length, expected):
        assert encode_length(length) == expected
        assert decode_length(expected) == (length, len(expected))

    def test_decode_incomplete_prefix(self):
        assert decode_length(b"\xc0\x40") is None
        assert decode_length(b"") is None
        assert decode_length(b"\xf0\x00\x00") is None

    @pytest.mark.parametrize("first", [0xF8, 0xFC, 0xFF])
    def test_reserved_control_byte_rejected(self, first):
        with pytest.raises(ProtocolError):
            decode_length(bytes([first, 0, 0, 0, 0]))

    def test_negative_length_rejected(self):
        with pytest.raises(ValueError):
            encode_length(-1)


class TestEncode:
    """Tests for request encoding."""

    def test_sentence_ends_with_zero_length_word(self):
        frame = encode_sentence(["/ppp/secret/print"])
        assert frame == b"\x11/ppp/secret/print\x00"

    def test_empty_word_rejected(self):
        with pytest.raises(ValueError):
            encode_word("")

    def test_empty_sentence_rejected(self):
        with pytest.raises(ValueError):
            encode_sentence([])

    def test_build_words_order(self):
        words = build_words(
            "/ppp/secret/add",
            {"name": "alice", "password": "pw", "profile": "10M"},
            queries=["disabled=no"],
            tag=3,
        )
        assert words == [
            "/ppp/secret/add",
            "=name=alice",
            "=password=pw",
            "=profile=10M",
            "?disabled=no",
            ".tag=3",
        ]

    def test_query_keeps_existing_prefix(self):
        assert build_words("/ppp/active/print", queries=["?name=bob"]) == ["/ppp/active/print", "?name=bob"]

    def test_multibyte_word_length_counts_bytes(self):
        frame = encode_word("=comment=привет")
        assert frame[0] == len("=comment=привет".encode("utf-8"))

    def test_long_word_uses_two_byte_prefix(self):
        word = "=comment=" + "x" * 200
        frame = encode_word(word)
        assert frame[:2] == encode_length(209)
        assert decode_words(encode_sentence(["/x", word])) == [["/x", word]]


class TestSentenceParser:
    """Tests for streaming decode."""

    def test_round_trip(self):
        frame = encode("/ip/pool/print", {"name": "pool1"}, ["ranges=10.0.0.1-10.0.0.9"], tag=12)
        assert decode_words(frame) == [
            ["/ip/pool/print", "=name=pool1", "?ranges=10.0.0.1-10.0.0.9", ".tag=12"]
        ]

    def test_byte_by_byte_feed(self):
        data = encode_sentence(["!re", "=name=alice", ".tag=1"]) + encode_sentence(["!done", ".tag=1"])
        parser = SentenceParser()
        sentences = []
        for i in range(len(data)):
            sentences.extend(parser.feed(data[i:i + 1]))

        assert sentences == [["!re", "=name=alice", ".tag=1"], ["!done", ".tag=1"]]
        assert not parser.pending

    def test_no_sentence_until_terminator(self):
        parser = SentenceParser()
        assert parser.feed(encode_word("!re") + encode_word("=name=a")) == []
        assert parser.pending
        assert parser.feed(b"\x00") == [["!re", "=name=a"]]

    def test_split_inside_length_prefix(self):
        word = "=comment=" + "y" * 300
        data = encode_sentence(["!re", word])
        parser = SentenceParser()
        split = len(encode_word("!re")) + 1  # middle of the 2-byte prefix
        assert parser.feed(data[:split]) == []
        assert parser.feed(data[split:]) == [["!re", word]]

    def test_truncated_stream_is_protocol_error(self):
        parser = SentenceParser()
        parser.feed(encode_word("!re") + b"\x05=na")
        with pytest.raises(ProtocolError):
            parser.close()

    def test_clean_close(self):
        parser = SentenceParser()
        parser.feed(encode_sentence(["!done"]))
        parser.close()

    def test_malformed_prefix_is_protocol_error(self):
        with pytest.raises(ProtocolError):
            SentenceParser().feed(b"\xf8abc")

    def test_word_size_limit(self):
        parser = SentenceParser(max_word_size=10)
        with pytest.raises(ProtocolError):
            parser.feed(encode_length(11) + b"x" * 11)

    def test_empty_sentence_rejected(self):
        with pytest.raises(ProtocolError):
            SentenceParser().feed(b"\x00")

    def test_invalid_utf8_falls_back_to_latin1(self):
        raw = b"=comment=\xe9t\xe9"
        data = encode_length(len(raw)) + raw
        sentences = SentenceParser().feed(encode_word("!re") + data + b"\x00")
        assert sentences == [["!re", "=comment=été"]]


class TestReplySentence:
    """Tests for reply parsing."""

    def test_parse_reply_word(self):
        assert parse_reply_word("=name=value") == ("name", "value")
        assert parse_reply_word("=comment=") == ("comment", "")
        assert parse_reply_word("=note=a=b") == ("note", "a=b")
        assert parse_reply_word(".tag=5") == (".tag", "5")

    def test_attribute_without_name_rejected(self):
        with pytest.raises(ProtocolError):
            parse_reply_word("==value")

    def test_re_sentence(self):
        sentence = Sentence.from_words(["!re", "=.id=*1", "=name=alice", ".tag=4"])
        assert sentence.reply_type == REPLY_RE
        assert sentence.tag == "4"
        assert sentence.attributes == {".id": "*1", "name": "alice"}
        assert not sentence.is_terminal

    def test_trap_message(self):
        sentence = Sentence.from_words(["!trap", "=category=1", "=message=no such item"])
        assert sentence.reply_type == REPLY_TRAP
        assert sentence.message == "no such item"
        assert sentence.is_terminal

    def test_fatal_bare_message(self):
        sentence = Sentence.from_words(["!fatal", "session", "terminated"])
        assert sentence.reply_type == REPLY_FATAL
        assert sentence.message == "session terminated"

    def test_unknown_reply_type(self):
        with pytest.raises(ProtocolError):
            Sentence.from_words(["!bogus"])

    def test_decode_sequence(self):
        data = b"".join([
            encode_sentence(["!re", "=name=a"]),
            encode_sentence(["!re", "=name=b"]),
            encode_sentence(["!done", "=ret=*2"]),
        ])
        sentences = list(decode(data))
        assert [s.reply_type for s in sentences] == [REPLY_RE, REPLY_RE, REPLY_DONE]
        assert sentences[-1].attributes["ret"] == "*2"
