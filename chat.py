import sys
import argparse
import torch

from config import Config, make_generator
from vocab import Vocabulary, normalize_string, indexes_from_sentence
from model import get_latest_epoch, load_checkpoint, checkpoint_path


def sample_index(probs, generator=None):
    """
    Inverse-CDF draw from a categorical distribution: pick u in [0, total) and
    return the first index whose running sum exceeds it. A distribution with
    no usable mass falls back to a uniform draw.
    """
    total = probs.sum()
    if not torch.isfinite(probs).all() or total <= 1e-12:
        return int(torch.randint(len(probs), (1,), generator=generator)[0])

    u = torch.rand(1, generator=generator, dtype=probs.dtype) * total
    cumulative = torch.cumsum(probs, dim=0)
    index = int(torch.searchsorted(cumulative, u, right=True)[0])

    if index >= len(probs):
        # Rounding left the last running sum a hair under u: take the last word with any mass
        index = int(torch.nonzero(probs > 0)[-1, 0])
    return index


def apply_temperature(probs, temperature):
    """temperature < 1 sharpens the distribution, > 1 flattens it."""
    if temperature == 1.0:
        return probs
    # Rescale in log space; powers of small probabilities underflow to zero
    return torch.softmax(torch.log(probs.clamp_min(0)) / temperature, dim=-1)


def _prime(model, input_ids, state):
    # Run the whole input through the model; the last distribution predicts the first reply word
    probs = None
    for token_id in input_ids:
        probs, state = model(token_id, state)
    return probs, state


def first_step_distribution(model, input_ids):
    """The distribution the sampler draws the first reply word from."""
    if not input_ids:
        raise ValueError("Cannot condition on an empty input")
    with torch.no_grad():
        probs, _ = _prime(model, input_ids, model.init_state())
    return probs


@torch.no_grad()
def decode_steps(model, input_ids, max_length, generator=None, temperature=1.0, eos_id=None):
    """
    Yields (distribution, drawn id) for each decoding step. Each drawn id is
    fed back in as the next input. Stops after max_length draws, or right
    after yielding <eos> when eos_id is given.
    """
    input_ids = list(input_ids)
    if not input_ids:
        if eos_id is None:
            raise ValueError("Cannot generate from an empty input")
        # Nothing the vocabulary knows was said; start as if a turn just ended
        input_ids = [eos_id]

    # Every request gets its own zero state
    probs, state = _prime(model, input_ids, model.init_state())

    for step in range(max_length):
        probs = apply_temperature(probs, temperature)
        predicted_id = sample_index(probs, generator)
        yield probs, predicted_id

        if (eos_id is not None and predicted_id == eos_id) or step == max_length - 1:
            break
        probs, state = model(predicted_id, state)


def generate(model, input_ids, max_length, generator=None, temperature=1.0, eos_id=None):
    """
    Autoregressively samples up to max_length ids after input_ids. Without
    eos_id exactly max_length ids come back; with it, generation stops at the
    first <eos> (not included).
    """
    sequence = []
    for _, predicted_id in decode_steps(model, input_ids, max_length, generator, temperature, eos_id):
        if eos_id is not None and predicted_id == eos_id:
            break
        sequence.append(predicted_id)
    return sequence


def generate_reply(model, vocab, tokens, config, generator=None):
    """Tokens in, tokens out: the seam the chat transport talks to."""
    input_ids = indexes_from_sentence(vocab, " ".join(tokens), config.input_unknown_policy)
    eos_id = vocab.eos_id if config.stop_at_eos else None

    output_ids = generate(model, input_ids, config.max_length, generator,
                          temperature=config.temperature, eos_id=eos_id)
    return [vocab.index2word[i] for i in output_ids]


class Chatbot:
    """
    Serves replies from a trained model. The parameters are frozen here, so
    any number of callers can use the same model as long as each passes its
    own generator (recurrent state is always per call).
    """

    def __init__(self, model, vocab, config, generator=None):
        if model.vocab_size != vocab.num_words:
            raise ValueError(
                f"Model was trained on {model.vocab_size} words, vocabulary has {vocab.num_words}"
            )
        self.model = model
        self.vocab = vocab
        self.config = config
        self.generator = generator

        self.model.eval()
        self.model.requires_grad_(False)

    def reply(self, text, generator=None):
        tokens = normalize_string(text).split()
        words = generate_reply(self.model, self.vocab, tokens, self.config,
                               generator if generator is not None else self.generator)
        return " ".join(words)


def load_chatbot(config, checkpoint=None):
    vocab = Vocabulary.load(config.vocab_path)

    if checkpoint is None:
        latest_epoch = get_latest_epoch(config.checkpoint_dir)
        if latest_epoch is None:
            raise FileNotFoundError(f"No checkpoints found in {config.checkpoint_dir}")
        checkpoint = checkpoint_path(config.checkpoint_dir, latest_epoch)

    print(f"Loading model from {checkpoint}...")
    model, _ = load_checkpoint(checkpoint)
    return Chatbot(model, vocab, config, make_generator(config.seed))


def chat_with_bot(bot):
    print("\n" + "="*50)
    print("Chatbot is ready! Type 'quit' to exit.")
    print("="*50)

    while True:
        try:
            user_input = input("> You: ")
        except EOFError:
            break
        if user_input.lower() in ['quit', 'exit']:
            break

        response = bot.reply(user_input)
        print(f"> Bot: {response}")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Chat with a trained seq2seq model")
    parser.add_argument("--config", type=str, default=None, help="JSON file with Config overrides")
    parser.add_argument("--checkpoint", type=str, default=None, help="Checkpoint file (default: latest)")
    parser.add_argument("--seed", type=int, default=None, help="Random seed for sampling")
    args = parser.parse_args(argv)

    try:
        if args.config:
            config = Config.from_json(args.config, seed=args.seed)
        else:
            config = Config(seed=args.seed)
        bot = load_chatbot(config, args.checkpoint)
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    chat_with_bot(bot)
    return 0


if __name__ == "__main__":
    sys.exit(main())
