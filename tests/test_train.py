"""
Tests for the training loop
  - teacher-forced loss, scored on reply tokens only
  - loss goes down on a small synthetic dataset
  - learning rate decays once per epoch
  - hi/there/bye scenario
  - command line entry point
"""

import json
import pytest
import torch

from config import Config, make_generator
from vocab import Example
from model import get_latest_epoch
from chat import first_step_distribution
from train import sequence_loss, example_loss, train_step, evaluate_loss, train_epochs, make_optimizer, main


@pytest.fixture
def synthetic_examples():
    # Five fixed (input, reply) pairs over the 15-word chat vocabulary
    return [
        Example([2], [[3, 4]], label=[13]),
        Example([5, 6, 7], [[8, 9]], label=[13]),
        Example([10], [[11, 12]], label=[14]),
        Example([3, 4], [[2]], label=[13]),
        Example([11, 12], [[10]], label=[14]),
    ]


class CorruptFirstSteps:
    """Wraps a model and wipes out the distributions of its first few steps."""

    def __init__(self, model, steps):
        self.model = model
        self.steps = steps
        self.calls = 0

    def init_state(self):
        return self.model.init_state()

    def __call__(self, token_id, state=None):
        probs, state = self.model(token_id, state)
        self.calls += 1
        if self.calls <= self.steps:
            probs = torch.full_like(probs, 1e-6)
        return probs, state


class TestLoss:

    def test_sequence_loss_is_positive_scalar(self, chat_vocab, make_model):
        model = make_model(chat_vocab.num_words)
        loss = sequence_loss(model, [2, 3, 4, 1])
        assert loss.dim() == 0
        assert loss.item() > 0

    def test_sequence_too_short(self, chat_vocab, make_model):
        model = make_model(chat_vocab.num_words)
        with pytest.raises(ValueError):
            sequence_loss(model, [2])

    def test_uniform_model_loss(self, chat_vocab, make_model):
        model = make_model(chat_vocab.num_words)
        with torch.no_grad():
            model.head.out.weight.zero_()
            model.head.out.bias.zero_()
        loss = sequence_loss(model, [2, 3, 4])
        expected = torch.log(torch.tensor(float(chat_vocab.num_words)))
        assert abs(loss.item() - expected.item()) < 1e-4

    def test_example_loss_scores_reply_targets_only(self, chat_vocab, make_model):
        model = make_model(chat_vocab.num_words)
        eos = chat_vocab.eos_id
        example = Example([2, 3, 4, 5], [[8]], label=[])

        loss = example_loss(model, example, eos_id=eos)

        # The input only primes the state: P(8 | input) and P(<eos> | input, 8) are scored
        with torch.no_grad():
            state = None
            for token_id in example.input_ids:
                probs, state = model(token_id, state)
            p_reply = probs[8]
            probs, _ = model(8, state)
            p_eos = probs[eos]
        expected = -(torch.log(p_reply + 1e-9) + torch.log(p_eos + 1e-9)) / 2
        assert abs(loss.item() - expected.item()) < 1e-5

        every_step = sequence_loss(model, [2, 3, 4, 5, 8, eos])
        assert abs(every_step.item() - loss.item()) > 1e-6

    def test_example_loss_ignores_input_predictions(self, chat_vocab, make_model):
        model = make_model(chat_vocab.num_words)
        eos = chat_vocab.eos_id
        example = Example([2, 3], [[8, 9]], label=[])
        sequence = [2, 3, 8, 9, eos]

        # Step 0 predicts the input word 3; replacing that prediction must not move the loss
        corrupted = CorruptFirstSteps(model, steps=1)
        assert abs(example_loss(corrupted, example, eos).item() - example_loss(model, example, eos).item()) < 1e-6

        corrupted = CorruptFirstSteps(model, steps=1)
        assert abs(sequence_loss(corrupted, sequence).item() - sequence_loss(model, sequence).item()) > 1e-4

    def test_example_loss_needs_input(self, chat_vocab, make_model):
        model = make_model(chat_vocab.num_words)
        with pytest.raises(ValueError):
            example_loss(model, Example([], [[8]], label=[]), eos_id=chat_vocab.eos_id)

    def test_train_step_updates_parameters(self, chat_vocab, make_model, small_config, synthetic_examples):
        model = make_model(chat_vocab.num_words)
        optimizer, _ = make_optimizer(model, small_config)
        before = model.head.out.weight.clone()

        loss = train_step(model, optimizer, synthetic_examples[0], eos_id=chat_vocab.eos_id)
        assert isinstance(loss, float)
        assert not torch.equal(before, model.head.out.weight)


class TestTraining:

    def test_loss_decreases(self, chat_vocab, make_model, small_config, synthetic_examples):
        model = make_model(chat_vocab.num_words, seed=42)
        eos_id = chat_vocab.eos_id

        before = evaluate_loss(model, synthetic_examples, eos_id)
        losses = train_epochs(model, synthetic_examples, small_config, make_generator(0), eos_id=eos_id)
        after = evaluate_loss(model, synthetic_examples, eos_id)

        assert len(losses) == small_config.epochs
        assert after < before
        # Robust to a noisy epoch here and there
        assert min(losses[1:]) < losses[0]

    def test_learning_rate_decays_each_epoch(self, chat_vocab, make_model, small_config, synthetic_examples):
        model = make_model(chat_vocab.num_words)
        optimizer, scheduler = make_optimizer(model, small_config)

        train_epochs(model, synthetic_examples[:1], small_config, make_generator(0),
                     optimizer=optimizer, scheduler=scheduler)

        expected = small_config.learning_rate * small_config.lr_decay ** small_config.epochs
        assert optimizer.param_groups[0]["lr"] == pytest.approx(expected)

    def test_same_seed_same_training(self, chat_vocab, make_model, small_config, synthetic_examples):
        small_config.shuffle = True
        small_config.epochs = 2
        runs = []
        for _ in range(2):
            model = make_model(chat_vocab.num_words, seed=3)
            runs.append(train_epochs(model, synthetic_examples, small_config, make_generator(3)))
        assert runs[0] == runs[1]

    def test_empty_dataset(self, chat_vocab, make_model, small_config):
        with pytest.raises(ValueError):
            train_epochs(make_model(chat_vocab.num_words), [], small_config, make_generator(0))

    def test_hi_there_scenario(self, tiny_vocab, make_model):
        config = Config(epochs=60, learning_rate=0.01, lr_decay=1.0, shuffle=False)
        model = make_model(tiny_vocab.num_words)
        hi, there, bye = 0, 1, 2

        train_epochs(model, [Example([hi], [[there]], label=[])], config, make_generator(0))

        probs = first_step_distribution(model, [hi])
        assert probs[there] > 0.5
        assert probs[there] > 2 * probs[bye]


class TestMain:

    def _write_setup(self, tmp_path, write_corpus):
        data = write_corpus(tmp_path / "data", {
            "greeting.txt": ["hello there", "hi", "how are you"],
            "farewell.txt": ["bye", "see ya"],
        })
        config_path = tmp_path / "config.json"
        config_path.write_text(json.dumps({
            "vocab_path": str(tmp_path / "vocab.json"),
            "data_dir": str(data),
            "checkpoint_dir": str(tmp_path / "checkpoints"),
            "embedding_size": 8,
            "hidden_size": 16,
            "epochs": 2,
            "max_length": 5,
        }), encoding="utf-8")
        return config_path

    def test_train_from_scratch(self, tmp_path, write_corpus):
        config_path = self._write_setup(tmp_path, write_corpus)
        plot_path = tmp_path / "loss.png"

        status = main(["--config", str(config_path), "--build-vocab", "--seed", "0",
                       "--plot-loss", str(plot_path)])

        assert status == 0
        assert (tmp_path / "vocab.json").exists()
        assert get_latest_epoch(str(tmp_path / "checkpoints")) == 2
        assert plot_path.exists()

    def test_resume(self, tmp_path, write_corpus):
        config_path = self._write_setup(tmp_path, write_corpus)
        assert main(["--config", str(config_path), "--build-vocab", "--seed", "0"]) == 0

        status = main(["--config", str(config_path), "--resume", "--epochs", "3"])
        assert status == 0
        assert get_latest_epoch(str(tmp_path / "checkpoints")) == 3

    def test_missing_vocabulary_is_fatal(self, tmp_path, write_corpus, capsys):
        config_path = self._write_setup(tmp_path, write_corpus)
        assert main(["--config", str(config_path)]) == 1
        assert "Vocabulary file not found" in capsys.readouterr().err

    def test_missing_corpus_is_fatal(self, tmp_path):
        status = main(["--vocab", str(tmp_path / "vocab.json"), "--data-dir", str(tmp_path / "nope"),
                       "--build-vocab"])
        assert status == 1
