#!/usr/bin/env python3
"""
RouterOS API wire codec

Pure encode/decode of the RouterOS binary API sentence protocol. No I/O.

Wire Protocol:
  sentence = word* + zero-length word
  word     = [variable-length integer: byte length] + [N bytes]

Length prefix:
  0x00000000 - 0x0000007F   1 byte   (0xxxxxxx)
  0x00000080 - 0x00003FFF   2 bytes  (10xxxxxx ...)
  0x00004000 - 0x001FFFFF   3 bytes  (110xxxxx ...)
  0x00200000 - 0x0FFFFFFF   4 bytes  (1110xxxx ...)
  0x10000000 - 0xFFFFFFFF   5 bytes  (0xF0 + 4 bytes big-endian)
  0xF8 - 0xFF first byte    reserved control bytes (rejected)

Reply sentences start with !re, !done, !trap, !fatal or !empty and carry
attribute words (=key=value) and API attribute words (.tag=N).

Usage:
    frame = encode("/ppp/secret/print", queries=["?disabled=false"], tag=7)

    parser = SentenceParser()
    for words in parser.feed(chunk):
        sentence = Sentence.from_words(words)
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from router_errors import ProtocolError

# Reply types
REPLY_RE = "!re"
REPLY_DONE = "!done"
REPLY_TRAP = "!trap"
REPLY_FATAL = "!fatal"
REPLY_EMPTY = "!empty"

REPLY_TYPES = {REPLY_RE, REPLY_DONE, REPLY_TRAP, REPLY_FATAL, REPLY_EMPTY}
TERMINAL_REPLY_TYPES = {REPLY_DONE, REPLY_TRAP, REPLY_FATAL}

# Largest length the 5-byte prefix can carry
MAX_ENCODABLE_LENGTH = 0xFFFFFFFF

# Sanity limit for a single word; RouterOS never sends anything close to this
MAX_WORD_SIZE = 16 * 1024 * 1024  # 16 MB


def encode_length(length: int) -> bytes:
    """Encode a word length as a RouterOS variable-length integer"""
    if length < 0:
        raise ValueError(f"Negative length: {length}")
    if length < 0x80:
        return bytes([length])
    if length < 0x4000:
        return (length | 0x8000).to_bytes(2, "big")
    if length < 0x200000:
        return (length | 0xC00000).to_bytes(3, "big")
    if length < 0x10000000:
        return (length | 0xE0000000).to_bytes(4, "big")
    if length <= MAX_ENCODABLE_LENGTH:
        return b"\xf0" + length.to_bytes(4, "big")
    raise ValueError(f"Length too large: {length}")


def decode_length(buf: bytes, offset: int = 0) -> Optional[Tuple[int, int]]:
    """Decode a length prefix starting at ``offset``.

    Returns:
        (length, offset of the first payload byte), or None when ``buf``
        does not yet hold the whole prefix

    Raises:
        ProtocolError: first byte is a reserved control byte
    """
    if offset >= len(buf):
        return None

    first = buf[offset]
    if first & 0x80 == 0x00:
        size, mask = 1, 0x7F
    elif first & 0xC0 == 0x80:
        size, mask = 2, 0x3FFF
    elif first & 0xE0 == 0xC0:
        size, mask = 3, 0x1FFFFF
    elif first & 0xF0 == 0xE0:
        size, mask = 4, 0x0FFFFFFF
    elif first == 0xF0:
        if offset + 5 > len(buf):
            return None
        return int.from_bytes(buf[offset + 1:offset + 5], "big"), offset + 5
    else:
        raise ProtocolError(f"Invalid length prefix byte 0x{first:02X}")

    if offset + size > len(buf):
        return None
    value = int.from_bytes(buf[offset:offset + size], "big") & mask
    return value, offset + size


def decode_text(data: bytes) -> str:
    """Decode a word payload.

    RouterOS sends whatever code page the router is configured with, so
    anything that is not valid UTF-8 falls back to latin-1 (lossless).
    """
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("latin-1")


def encode_word(word: str) -> bytes:
    """Encode one non-empty word with its length prefix"""
    data = word.encode("utf-8")
    if not data:
        raise ValueError("Empty word inside a sentence")
    if len(data) > MAX_WORD_SIZE:
        raise ValueError(f"Word too large: {len(data)} bytes")
    return encode_length(len(data)) + data


def encode_sentence(words: Sequence[str]) -> bytes:
    """Encode a sentence: every word, then the zero-length terminator"""
    if not words:
        raise ValueError("Sentence must contain at least one word")
    return b"".join(encode_word(w) for w in words) + b"\x00"


def build_words(
    command_path: str,
    args: Optional[Mapping[str, str]] = None,
    queries: Optional[Iterable[str]] = None,
    tag: Optional[object] = None,
) -> List[str]:
    """Build the word list of a request sentence.

    ``args`` become ``=key=value`` attribute words in insertion order,
    ``queries`` become ``?`` query words, ``tag`` becomes ``.tag=N``.
    """
    words = [command_path]
    for key, value in (args or {}).items():
        words.append(f"={key}={value}")
    for query in queries or ():
        words.append(query if query.startswith("?") else f"?{query}")
    if tag is not None:
        words.append(f".tag={tag}")
    return words


def encode(
    command_path: str,
    args: Optional[Mapping[str, str]] = None,
    queries: Optional[Iterable[str]] = None,
    tag: Optional[object] = None,
) -> bytes:
    """Encode a structured command request into a byte frame"""
    return encode_sentence(build_words(command_path, args, queries, tag))


def parse_reply_word(word: str) -> Tuple[str, str]:
    """Split an attribute word into (key, value).

    ``=name=value`` -> ("name", "value")
    ``=comment=``   -> ("comment", "")
    ``=note=a=b``   -> ("note", "a=b")
    ``.tag=5``      -> (".tag", "5")
    """
    if word.startswith("="):
        body = word[1:]
        key, sep, value = body.partition("=")
        if not key:
            raise ProtocolError(f"Attribute word without a name: {word!r}")
        return key, value if sep else ""
    if word.startswith("."):
        key, _, value = word.partition("=")
        return key, value
    raise ProtocolError(f"Not an attribute word: {word!r}")


@dataclass
class Sentence:
    """One decoded reply sentence"""
    reply_type: str
    attributes: Dict[str, str] = field(default_factory=dict)
    tag: Optional[str] = None
    api_attributes: Dict[str, str] = field(default_factory=dict)
    text: Optional[str] = None  # bare message word of !fatal

    @classmethod
    def from_words(cls, words: Sequence[str]) -> "Sentence":
        if not words:
            raise ProtocolError("Empty reply sentence")
        reply_type = words[0]
        if reply_type not in REPLY_TYPES:
            raise ProtocolError(f"Unknown reply type: {reply_type!r}")

        sentence = cls(reply_type=reply_type)
        for word in words[1:]:
            if word.startswith("="):
                key, value = parse_reply_word(word)
                sentence.attributes[key] = value
            elif word.startswith(".tag="):
                sentence.tag = word[len(".tag="):]
            elif word.startswith("."):
                key, value = parse_reply_word(word)
                sentence.api_attributes[key] = value
            elif reply_type == REPLY_FATAL:
                sentence.text = word if sentence.text is None else f"{sentence.text} {word}"
            else:
                raise ProtocolError(f"Unexpected word in {reply_type} sentence: {word!r}")
        return sentence

    @property
    def is_terminal(self) -> bool:
        return self.reply_type in TERMINAL_REPLY_TYPES

    @property
    def message(self) -> Optional[str]:
        if self.reply_type == REPLY_FATAL:
            return self.text or self.attributes.get("message")
        return self.attributes.get("message")


class SentenceParser:
    """Streaming sentence parser.

    Bytes may arrive split at any point; ``feed`` only returns sentences
    whose terminating zero-length word has been seen. Complete words of an
    unfinished sentence are kept between calls.
    """

    def __init__(self, max_word_size: int = MAX_WORD_SIZE):
        self.max_word_size = max_word_size
        self._buffer = bytearray()
        self._words: List[str] = []

    @property
    def pending(self) -> bool:
        """True while a partial sentence is buffered"""
        return bool(self._buffer) or bool(self._words)

    def feed(self, data: bytes) -> List[List[str]]:
        """Add received bytes, return the sentences completed by them"""
        self._buffer.extend(data)
        sentences: List[List[str]] = []
        pos = 0

        while True:
            prefix = decode_length(self._buffer, pos)
            if prefix is None:
                break
            length, start = prefix
            if length == 0:
                if not self._words:
                    raise ProtocolError("Empty sentence (zero-length word with no words)")
                sentences.append(self._words)
                self._words = []
                pos = start
                continue
            if length > self.max_word_size:
                raise ProtocolError(f"Word too large: {length} bytes")
            end = start + length
            if end > len(self._buffer):
                break
            self._words.append(decode_text(bytes(self._buffer[start:end])))
            pos = end

        del self._buffer[:pos]
        return sentences

    def close(self) -> None:
        """Signal end of stream; a buffered partial frame is an error"""
        if self.pending:
            buffered = len(self._buffer)
            words = len(self._words)
            self._buffer.clear()
            self._words = []
            raise ProtocolError(
                f"Stream closed mid-sentence ({words} words, {buffered} bytes buffered)"
            )


def decode_words(data: bytes) -> List[List[str]]:
    """Decode a complete byte string into word lists"""
    parser = SentenceParser()
    sentences = parser.feed(data)
    parser.close()
    return sentences


def decode(data: bytes) -> Iterator[Sentence]:
    """Lazily decode a complete byte string into reply sentences"""
    parser = SentenceParser()
    for words in parser.feed(data):
        yield Sentence.from_words(words)
    parser.close()
