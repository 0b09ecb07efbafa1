import sys
import argparse
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import matplotlib.ticker as ticker
import numpy as np

from config import Config, make_generator
from vocab import normalize_string, indexes_from_sentence
from chat import load_chatbot, decode_steps


def evaluate_and_get_distributions(model, vocab, sentence, config, generator=None):
    """
    Runs inference but keeps the full next-word distribution from every
    decoding step alongside the words that were drawn from it.
    """
    input_normalized = normalize_string(sentence)
    input_ids = indexes_from_sentence(vocab, input_normalized, config.input_unknown_policy)
    if not input_ids:
        raise ValueError(f"None of the words in {sentence!r} are in the vocabulary")

    eos_id = vocab.eos_id if config.stop_at_eos else None
    decoded_words = []
    distributions = []  # One row per decoding step

    for probs, predicted_id in decode_steps(model, input_ids, config.max_length, generator,
                                            config.temperature, eos_id):
        distributions.append(probs.cpu().numpy())
        decoded_words.append(vocab.index2word[predicted_id])

    return decoded_words, np.array(distributions), input_normalized


def show_distributions(vocab, output_words, distributions, output_filename="distribution_heatmap.png"):
    """Heatmap of P(word) at each decoding step, one row per generated word."""
    fig = plt.figure(figsize=(12, 8))
    ax = fig.add_subplot(111)

    cax = ax.matshow(distributions, cmap='viridis', aspect='auto')
    fig.colorbar(cax)

    # Only label the columns when the vocabulary is small enough to read
    if vocab.num_words <= 60:
        ax.set_xticks(range(vocab.num_words))
        ax.set_xticklabels([vocab.index2word[i] for i in range(vocab.num_words)], rotation=90)
    ax.set_yticks(range(len(output_words)))
    ax.set_yticklabels(output_words)

    plt.savefig(output_filename, bbox_inches='tight', dpi=300)
    plt.close(fig)
    print(f"Distribution heatmap saved as: {output_filename}")
    return output_filename


def plot_loss_curve(epoch_losses, output_filename="loss_curve.png"):
    fig = plt.figure(figsize=(8, 5))
    ax = fig.add_subplot(111)

    epochs = np.arange(1, len(epoch_losses) + 1)
    ax.plot(epochs, epoch_losses, marker='o')
    ax.set_xlabel("Epoch")
    ax.set_ylabel("Average loss")
    ax.xaxis.set_major_locator(ticker.MaxNLocator(integer=True))
    ax.grid(True, alpha=0.3)

    plt.savefig(output_filename, bbox_inches='tight', dpi=150)
    plt.close(fig)
    print(f"Loss curve saved as: {output_filename}")
    return output_filename


def main(argv=None):
    parser = argparse.ArgumentParser(description="Plot the reply distributions for one message")
    parser.add_argument("message", type=str, help="What to say to the bot")
    parser.add_argument("--config", type=str, default=None, help="JSON file with Config overrides")
    parser.add_argument("--checkpoint", type=str, default=None, help="Checkpoint file (default: latest)")
    parser.add_argument("--output", type=str, default="distribution_heatmap.png")
    args = parser.parse_args(argv)

    try:
        config = Config.from_json(args.config) if args.config else Config()
        bot = load_chatbot(config, args.checkpoint)
        output_words, distributions, _ = evaluate_and_get_distributions(
            bot.model, bot.vocab, args.message, config, make_generator(config.seed)
        )
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Bot: {' '.join(output_words)}")
    show_distributions(bot.vocab, output_words, distributions, args.output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
