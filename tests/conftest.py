import pytest

from config import Config, make_generator
from vocab import Vocabulary
from model import Seq2Seq


@pytest.fixture
def write_corpus():
    def _write(directory, files):
        """files: {filename: [line, ...]}"""
        directory.mkdir(parents=True, exist_ok=True)
        for filename, lines in files.items():
            (directory / filename).write_text("\n".join(lines) + "\n", encoding="utf-8")
        return directory
    return _write


@pytest.fixture
def tiny_vocab():
    return Vocabulary({"hi": 0, "there": 1, "bye": 2})


@pytest.fixture
def chat_vocab():
    words = ["<unk>", "<eos>", "hello", "hi", "there", "how", "are", "you",
             "fine", "thanks", "bye", "see", "ya", "greeting", "farewell"]
    return Vocabulary({w: i for i, w in enumerate(words)})


@pytest.fixture
def small_config(tmp_path):
    return Config(
        vocab_path=str(tmp_path / "vocab.json"),
        data_dir=str(tmp_path / "data"),
        checkpoint_dir=str(tmp_path / "checkpoints"),
        embedding_size=16,
        hidden_size=32,
        epochs=10,
        learning_rate=0.01,
        shuffle=False,
        max_length=8,
        seed=0,
    )


@pytest.fixture
def make_model():
    def _make(vocab_size, seed=0, embedding_size=16, hidden_size=32):
        return Seq2Seq(vocab_size, embedding_size, hidden_size, num_layers=2,
                       generator=make_generator(seed))
    return _make
