import json
from dataclasses import dataclass, fields, asdict
from typing import Optional

import torch

UNKNOWN_POLICIES = ("skip", "unk", "error")


@dataclass
class Config:
    """Everything the loaders, the trainer and the sampler need to know."""

    # Paths
    vocab_path: str = "vocab.json"
    data_dir: str = "data"
    checkpoint_dir: str = "checkpoints"

    # Model size
    embedding_size: int = 300
    hidden_size: int = 512
    num_layers: int = 2

    # Training
    epochs: int = 10
    learning_rate: float = 0.001
    lr_decay: float = 0.95  # multiplied into the learning rate once per epoch
    shuffle: bool = True

    # Generation
    max_length: int = 20
    temperature: float = 1.0
    stop_at_eos: bool = True

    # What to do with words that aren't in the vocabulary
    corpus_unknown_policy: str = "error"
    input_unknown_policy: str = "skip"

    seed: Optional[int] = None

    def __post_init__(self):
        for name in ("embedding_size", "hidden_size", "num_layers", "max_length"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.epochs < 0:
            raise ValueError("epochs must be >= 0")
        if self.learning_rate <= 0:
            raise ValueError("learning_rate must be positive")
        if not 0.0 < self.lr_decay <= 1.0:
            raise ValueError("lr_decay must be in (0, 1]")
        if self.temperature <= 0:
            raise ValueError("temperature must be positive")
        for name in ("corpus_unknown_policy", "input_unknown_policy"):
            if getattr(self, name) not in UNKNOWN_POLICIES:
                raise ValueError(f"{name} must be one of {UNKNOWN_POLICIES}")

    @classmethod
    def from_json(cls, path, **overrides):
        """
        Reads a JSON object of field overrides. Keyword arguments that are not
        None win over the file (that's how the command line flags get in).
        """
        try:
            with open(path, "r", encoding="utf-8") as f:
                values = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Could not parse config file {path}: {e}")

        if not isinstance(values, dict):
            raise ValueError(f"Config file {path} must contain a JSON object")

        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {sorted(unknown)}")

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def to_dict(self):
        return asdict(self)


def make_generator(seed=None):
    """Builds the one random generator that training and sampling share."""
    generator = torch.Generator()
    if seed is None:
        generator.seed()
    else:
        generator.manual_seed(seed)
    return generator
