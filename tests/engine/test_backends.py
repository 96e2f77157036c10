import json

import pytest

torch = pytest.importorskip("torch")

from prefixchat.engine.adapters.scripted import BOS_ID, EOS_ID, SPECIAL_TOKENS, ScriptedBackend
from prefixchat.engine.adapters.transformers_backend import (
    TransformersBackend,
    _make_byte_decoder,
    detect_piece_decoding,
)
from prefixchat.engine.text_codec import assemble


def _loaded(*args, **kwargs) -> ScriptedBackend:
    backend = ScriptedBackend(*args, **kwargs)
    backend.load("scripted", n_threads=1, context_size=256)
    return backend


def test_scripted_tokenize_special_markup() -> None:
    backend = _loaded()
    ids = backend.tokenize("<|im_start|>hi", add_bos=True, parse_special=True)
    assert ids == [BOS_ID, SPECIAL_TOKENS["<|im_start|>"], ord("h"), ord("i")]

    literal = backend.tokenize("<|im_start|>", add_bos=False, parse_special=False)
    assert literal == list(b"<|im_start|>")


def test_scripted_pieces_are_raw_bytes() -> None:
    backend = _loaded()
    assert backend.token_to_piece(0xC3) == b"\xc3"
    assert backend.token_to_piece(SPECIAL_TOKENS["<|im_end|>"]) == b"<|im_end|>"
    assert backend.token_to_piece(BOS_ID) == b""
    assert backend.is_end_of_sequence(EOS_ID)
    assert backend.is_end_of_sequence(SPECIAL_TOKENS["<|im_end|>"])
    assert not backend.is_end_of_sequence(ord("a"))


def test_scripted_scores_follow_the_reply() -> None:
    backend = _loaded(["ab"])
    backend.ingest_batch([BOS_ID])

    scores = backend.next_token_logits()
    assert scores.shape == (261,)
    assert int(torch.argmax(scores)) == ord("a")
    backend.ingest_batch([ord("a")])
    assert int(torch.argmax(backend.next_token_logits())) == ord("b")
    backend.ingest_batch([ord("b")])
    assert int(torch.argmax(backend.next_token_logits())) == EOS_ID


def test_scripted_truncate_and_clear() -> None:
    backend = _loaded()
    backend.ingest_batch(list(b"abcdef"))
    backend.truncate(2)
    assert backend.tokens == list(b"ab")
    backend.clear()
    assert backend.n_positions == 0
    with pytest.raises(RuntimeError):
        backend.next_token_logits()


def test_scripted_requires_load() -> None:
    backend = ScriptedBackend()
    with pytest.raises(RuntimeError):
        backend.tokenize("x", add_bos=False, parse_special=False)


def test_byte_decoder_covers_every_byte() -> None:
    decoder = _make_byte_decoder()
    assert sorted(decoder.values()) == list(range(256))
    # Printable ASCII maps to itself; space and newline are shifted into U+0100+.
    assert decoder["a"] == ord("a")
    assert decoder["Ġ"] == ord(" ")
    assert decoder["Ċ"] == ord("\n")


def test_transformers_backend_missing_path_fails_at_open(tmp_path) -> None:
    pytest.importorskip("transformers")
    from prefixchat.engine.adapters.transformers_backend import TransformersBackend
    from prefixchat.engine.errors import LoadError

    backend = TransformersBackend()
    with pytest.raises(LoadError) as excinfo:
        backend.load(str(tmp_path / "missing"), n_threads=1, context_size=4096)
    assert excinfo.value.stage == "open"
    assert not backend.is_loaded
    backend.unload()


class _StubBackendTokenizer:
    def __init__(self, decoder) -> None:
        self._decoder = decoder

    def to_str(self) -> str:
        return json.dumps({"model": {"type": "stub"}, "decoder": self._decoder})


class _StubTokenizer:
    """Just enough of a fast Hugging Face tokenizer to map ids to vocabulary pieces."""

    def __init__(self, vocab: list[str], decoder, special_ids=()) -> None:
        self._vocab = vocab
        self.all_special_ids = list(special_ids)
        self.backend_tokenizer = _StubBackendTokenizer(decoder)

    def convert_ids_to_tokens(self, token_id: int):
        return self._vocab[token_id] if 0 <= token_id < len(self._vocab) else None

    def convert_tokens_to_string(self, tokens: list[str]) -> str:
        return "".join(tokens)


_SPM_DECODER = {
    "type": "Sequence",
    "decoders": [
        {"type": "Replace", "pattern": {"String": "▁"}, "content": " "},
        {"type": "ByteFallback"},
        {"type": "Fuse"},
        {"type": "Strip", "content": " ", "start": 1, "stop": 0},
    ],
}
_BPE_DECODER = {"type": "ByteLevel", "add_prefix_space": True, "trim_offsets": True, "use_regex": True}


def _bound_transformers_backend(tokenizer):
    backend = TransformersBackend()
    backend._model = object()
    backend._cache = object()
    backend._tokenizer = tokenizer
    backend._bind_vocabulary(tokenizer)
    return backend


def test_detect_piece_decoding() -> None:
    assert detect_piece_decoding(_StubTokenizer([], _SPM_DECODER)) == "spm"
    assert detect_piece_decoding(_StubTokenizer([], {"type": "Metaspace", "replacement": "▁"})) == "spm"
    assert detect_piece_decoding(_StubTokenizer([], _BPE_DECODER)) == "bpe"
    assert detect_piece_decoding(_StubTokenizer([], {"type": "WordPiece"})) == "text"
    assert detect_piece_decoding(object()) == "text"


def test_sentencepiece_pieces_keep_accented_letters() -> None:
    vocab = ["ción", "▁café", "é", "<0xC3>", "<0xA9>", "</s>"]
    backend = _bound_transformers_backend(_StubTokenizer(vocab, _SPM_DECODER, special_ids=[5]))

    assert assemble(backend.token_to_piece(0)) == "ción"
    assert assemble(backend.token_to_piece(1)) == " café"
    assert assemble(backend.token_to_piece(2)) == "é"
    assert backend.token_to_piece(3) + backend.token_to_piece(4) == "é".encode("utf-8")
    assert backend.token_to_piece(5) == b"</s>"
    assert backend.token_to_piece(99) == b""


def test_byte_level_pieces_map_back_to_raw_bytes() -> None:
    vocab = ["Ġcaf", "Ã©", "Ã", "©", "a→b"]
    backend = _bound_transformers_backend(_StubTokenizer(vocab, _BPE_DECODER))

    assert assemble(backend.token_to_piece(0) + backend.token_to_piece(1)) == " café"
    assert backend.token_to_piece(2) == b"\xc3"
    assert assemble(backend.token_to_piece(2) + backend.token_to_piece(3)) == "é"
    # A character outside the byte table is taken as its own UTF-8 spelling.
    assert backend.token_to_piece(4) == b"a\xe2\x86\x92b"


class _FailingModel:
    device = "cpu"

    def __call__(self, *args, **kwargs):
        raise RuntimeError("forward failed")


class _CroppableCache:
    def __init__(self) -> None:
        self.cropped: list[int] = []

    def crop(self, max_length: int) -> None:
        self.cropped.append(max_length)


def test_failed_forward_crops_cache_back_to_committed_positions() -> None:
    backend = _bound_transformers_backend(_StubTokenizer([], _SPM_DECODER))
    cache = _CroppableCache()
    scores = torch.zeros(4)
    backend._model = _FailingModel()
    backend._cache = cache
    backend._context_size = 64
    backend._positions = 3
    backend._next_token_logits = scores

    with pytest.raises(RuntimeError, match="forward failed"):
        backend.ingest_batch([1, 2])

    assert cache.cropped == [3]
    assert backend.n_positions == 3
    assert backend.next_token_logits() is scores
