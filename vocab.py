import os
import json
import torch

# Reserved tokens. Neither is required in a vocabulary file, but when they are
# present the tokenizer and the sampler use them.
UNK_TOKEN = "<unk>"  # Unknown word: what unresolvable words map to under the "unk" policy
EOS_TOKEN = "<eos>"  # End Of Sequence: closes every target turn, stops generation


class Vocabulary:
    def __init__(self, word2index, name="vocab"):
        """
        Wraps a {token: id} mapping. The ids have to be exactly 0..n-1 with no
        token sharing an id, otherwise the reverse map can't be derived.
        """
        self.name = name
        self.word2index = dict(word2index)
        self.index2word = {}

        for word, index in self.word2index.items():
            if not isinstance(word, str) or not word:
                raise ValueError(f"Invalid token {word!r} in vocabulary '{name}'")
            if not isinstance(index, int) or isinstance(index, bool):
                raise ValueError(f"Token {word!r} has a non-integer id {index!r}")
            if index in self.index2word:
                raise ValueError(
                    f"Tokens {self.index2word[index]!r} and {word!r} share id {index}"
                )
            self.index2word[index] = word

        self.num_words = len(self.word2index)
        if set(self.index2word) != set(range(self.num_words)):
            raise ValueError(f"Vocabulary '{name}' ids must be dense integers in [0, {self.num_words})")

        self.unk_id = self.word2index.get(UNK_TOKEN)
        self.eos_id = self.word2index.get(EOS_TOKEN)

    def __len__(self):
        return self.num_words

    def __contains__(self, word):
        return word in self.word2index

    @classmethod
    def load(cls, path):
        """Reads a JSON object of token -> id."""
        if not os.path.isfile(path):
            raise FileNotFoundError(f"Vocabulary file not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            try:
                word2index = json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"Could not decode vocabulary file {path}: {e}")

        if not isinstance(word2index, dict):
            raise ValueError(f"Vocabulary file {path} must contain a JSON object")

        name = os.path.splitext(os.path.basename(path))[0]
        return cls(word2index, name=name)

    def save(self, path):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.word2index, f, ensure_ascii=False, indent=2)


def normalize_string(s):
    """Lowercases the string and collapses runs of whitespace to single spaces."""
    return " ".join(s.lower().split())


def indexes_from_sentence(vocab, sentence, policy="skip"):
    """
    Converts a normalized string into a list of integer word IDs.

    policy decides what happens to words the vocabulary doesn't know:
    "skip" drops them, "unk" maps them to <unk>, "error" raises KeyError.
    """
    if policy == "unk" and vocab.unk_id is None:
        raise ValueError(f"Vocabulary '{vocab.name}' has no {UNK_TOKEN} token for the 'unk' policy")

    indexes = []
    for word in sentence.split():
        if word in vocab.word2index:
            indexes.append(vocab.word2index[word])
        elif policy == "skip":
            continue
        elif policy == "unk":
            indexes.append(vocab.unk_id)
        elif policy == "error":
            raise KeyError(f"Unknown token {word!r}")
        else:
            raise ValueError(f"Unknown tokenization policy: {policy}")
    return indexes


def tensor_from_indexes(indexes):
    # dtype=torch.long is required for PyTorch embedding layers
    return torch.tensor(indexes, dtype=torch.long)


class Example:
    """One training file: an input utterance, its reply turns and its label."""

    def __init__(self, input_ids, turns, label, source=None):
        self.input_ids = input_ids
        self.turns = turns
        self.label = label
        self.source = source

    def __repr__(self):
        return f"Example(label={self.label!r}, input_ids={self.input_ids!r}, turns={self.turns!r})"


def training_sequence(example, eos_id=None):
    """
    Flattens an example into the id sequence the model is unrolled over:
    the input, then each reply turn (closed by <eos> when the vocab has one).
    Every consecutive pair of ids is one teacher-forced (input, target) step.
    """
    sequence = list(example.input_ids)
    for turn in example.turns:
        sequence.extend(turn)
        if eos_id is not None:
            sequence.append(eos_id)
    return sequence


def _corpus_files(data_dir):
    if not os.path.exists(data_dir):
        raise FileNotFoundError(f"Corpus directory not found: {data_dir}")
    if not os.path.isdir(data_dir):
        raise NotADirectoryError(f"Corpus path is not a directory: {data_dir}")

    for filename in sorted(os.listdir(data_dir)):
        path = os.path.join(data_dir, filename)
        if os.path.isfile(path) and not filename.startswith("."):
            yield filename, path


def _read_lines(path):
    with open(path, "r", encoding="utf-8") as f:
        lines = [normalize_string(line) for line in f]
    return [line for line in lines if line]


def label_from_filename(filename):
    """"greeting.hello.txt" -> ["greeting", "hello"]"""
    stem = os.path.splitext(filename)[0]
    return [part for part in stem.lower().split(".") if part]


def load_corpus(data_dir, vocab, policy="error"):
    """
    Reads one example per file: line 1 is the input utterance, every following
    line is a reply turn, and the filename (minus extension, split on '.') is
    the label. Any broken file aborts the whole load, so training never
    starts on half a corpus.
    """
    examples = []

    for filename, path in _corpus_files(data_dir):
        lines = _read_lines(path)
        if len(lines) < 2:
            raise ValueError(f"{path}: expected an input line and at least one reply line")

        try:
            input_ids = indexes_from_sentence(vocab, lines[0], policy)
            turns = [indexes_from_sentence(vocab, line, policy) for line in lines[1:]]
            # Labels are tags, not training targets: words missing from the vocab are dropped
            label = indexes_from_sentence(vocab, " ".join(label_from_filename(filename)), "skip")
        except KeyError as e:
            raise ValueError(f"{path}: {e.args[0]}") from e

        turns = [turn for turn in turns if turn]
        if not input_ids or not turns:
            raise ValueError(f"{path}: nothing left after tokenization")

        examples.append(Example(input_ids, turns, label, source=path))

    print(f"Loaded {len(examples)} examples from {data_dir}.")
    return examples


def build_vocabulary(data_dir, name="vocab"):
    """
    Builds a vocabulary from a corpus directory: reserved tokens first, then
    every word and label token in the order it is first seen.
    """
    word2index = {UNK_TOKEN: 0, EOS_TOKEN: 1}

    def add_word(word):
        if word not in word2index:
            word2index[word] = len(word2index)

    for filename, path in _corpus_files(data_dir):
        for line in _read_lines(path):
            for word in line.split():
                add_word(word)
        for word in label_from_filename(filename):
            add_word(word)

    print(f"Counted {len(word2index)} unique words in the vocabulary.")
    return Vocabulary(word2index, name=name)
