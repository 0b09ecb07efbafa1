import sys
import argparse
import torch
import torch.nn.functional as F
import torch.optim as optim
from tqdm import tqdm

from config import Config, make_generator
from vocab import Vocabulary, build_vocabulary, load_corpus, training_sequence, tensor_from_indexes
from model import Seq2Seq, get_latest_epoch, save_checkpoint, load_checkpoint, checkpoint_path
from chat import generate
from visualize import plot_loss_curve


def sequence_loss(model, sequence, first_target=1):
    """
    Teacher-forced pass over one id sequence: the true token at step t is the
    input, the true token at t+1 is the target. Only targets at positions
    >= first_target are scored, so the input words just prime the state.
    Returns the mean negative log-likelihood of the scored targets.
    """
    if first_target < 1 or first_target >= len(sequence):
        raise ValueError("A training sequence needs at least an input and a target token")

    sequence = tensor_from_indexes(sequence)
    state = model.init_state()

    step_probs = []
    for t in range(len(sequence) - 1):
        probs, state = model(sequence[t], state)
        step_probs.append(probs)

    # Row t predicts sequence[t + 1]
    probs = torch.stack(step_probs[first_target - 1:])
    # Small epsilon keeps log() finite if a probability underflows to zero
    return F.nll_loss(torch.log(probs + 1e-9), sequence[first_target:])


def example_loss(model, example, eos_id=None):
    """Loss of an example's reply turns, conditioned on its input."""
    return sequence_loss(model, training_sequence(example, eos_id), first_target=len(example.input_ids))


def train_step(model, optimizer, example, eos_id=None):
    optimizer.zero_grad()

    loss = example_loss(model, example, eos_id)
    loss.backward()
    optimizer.step()

    return loss.item()


def evaluate_loss(model, examples, eos_id=None):
    """Average loss over examples without touching the parameters."""
    with torch.no_grad():
        total = sum(example_loss(model, ex, eos_id).item() for ex in examples)
    return total / len(examples)


def evaluate_randomly(model, vocab, examples, config, generator, n=2):
    """Picks random training examples and prints the bot's reply next to the first target turn."""
    model.eval()

    for _ in range(n):
        example = examples[int(torch.randint(len(examples), (1,), generator=generator)[0])]
        output_ids = generate(model, example.input_ids, config.max_length, generator,
                              temperature=config.temperature,
                              eos_id=vocab.eos_id if config.stop_at_eos else None)

        print(f"> Input:  {' '.join(vocab.index2word[i] for i in example.input_ids)}")
        print(f"= Target: {' '.join(vocab.index2word[i] for i in example.turns[0])}")
        print(f"< Bot:    {' '.join(vocab.index2word[i] for i in output_ids)}\n")


def make_optimizer(model, config):
    optimizer = optim.Adam(model.parameters(), lr=config.learning_rate)
    # Learning rate is multiplied by lr_decay after every epoch
    scheduler = optim.lr_scheduler.ExponentialLR(optimizer, gamma=config.lr_decay)
    return optimizer, scheduler


def train_epochs(model, examples, config, generator, eos_id=None, start_epoch=1,
                 optimizer=None, scheduler=None, save_checkpoints=False, vocab=None):
    """
    Fits the model one example at a time for epochs start_epoch..config.epochs.
    Returns the average loss of every epoch that ran.
    """
    if not examples:
        raise ValueError("Cannot train on an empty dataset")

    if optimizer is None:
        optimizer, scheduler = make_optimizer(model, config)
    elif scheduler is None:
        scheduler = optim.lr_scheduler.ExponentialLR(optimizer, gamma=config.lr_decay)

    model.train()
    epoch_losses = []

    for epoch in range(start_epoch, config.epochs + 1):
        if config.shuffle:
            order = torch.randperm(len(examples), generator=generator).tolist()
        else:
            order = range(len(examples))

        epoch_loss = 0
        example_iterator = tqdm(order, desc=f"Epoch {epoch}/{config.epochs}", unit="example")

        for i in example_iterator:
            example = examples[i]
            loss = train_step(model, optimizer, example, eos_id)
            epoch_loss += loss

            label = " ".join(vocab.index2word[word_id] for word_id in example.label) if vocab else example.label
            example_iterator.set_postfix(loss=f"{loss:.4f}", label=label)

        scheduler.step()
        average = epoch_loss / len(examples)
        epoch_losses.append(average)
        print(f"--- Epoch {epoch} Complete | Average Loss: {average:.4f} | "
              f"LR: {scheduler.get_last_lr()[0]:.6f} ---")

        if save_checkpoints:
            path = save_checkpoint(model, config.checkpoint_dir, epoch, optimizer, scheduler)
            print(f"Saving checkpoint to {path}...")

        if vocab is not None:
            print("\n--- Random Evaluation ---")
            evaluate_randomly(model, vocab, examples, config, generator, n=2)
            model.train()

    return epoch_losses


def load_training_data(config, build_vocab=False):
    if build_vocab:
        vocab = build_vocabulary(config.data_dir)
        vocab.save(config.vocab_path)
        print(f"Wrote vocabulary to {config.vocab_path}")
    else:
        vocab = Vocabulary.load(config.vocab_path)

    examples = load_corpus(config.data_dir, vocab, config.corpus_unknown_policy)
    if not examples:
        raise ValueError(f"No training examples found in {config.data_dir}")
    return vocab, examples


def resume(config, vocab):
    """
    Picks up from the newest checkpoint. Returns (model, optimizer, scheduler,
    start_epoch), with model None if there's nothing to resume from.
    """
    latest_epoch = get_latest_epoch(config.checkpoint_dir)
    if latest_epoch is None:
        return None, None, None, 1

    print(f"Found checkpoints from epoch {latest_epoch}. Resuming training!")
    model, checkpoint = load_checkpoint(checkpoint_path(config.checkpoint_dir, latest_epoch))
    if model.vocab_size != vocab.num_words:
        raise ValueError(
            f"Checkpoint was trained on {model.vocab_size} words, vocabulary has {vocab.num_words}"
        )

    optimizer, scheduler = make_optimizer(model, config)
    if "optimizer" in checkpoint:
        optimizer.load_state_dict(checkpoint["optimizer"])
    if "scheduler" in checkpoint:
        scheduler.load_state_dict(checkpoint["scheduler"])

    return model, optimizer, scheduler, latest_epoch + 1


def build_parser():
    parser = argparse.ArgumentParser(description="Train the seq2seq chatbot on a corpus directory")
    parser.add_argument("--config", type=str, default=None, help="JSON file with Config overrides")
    parser.add_argument("--vocab", type=str, default=None, help="Vocabulary file (overrides config)")
    parser.add_argument("--data-dir", type=str, default=None, help="Corpus directory (overrides config)")
    parser.add_argument("--checkpoint-dir", type=str, default=None, help="Checkpoint directory (overrides config)")
    parser.add_argument("--epochs", type=int, default=None, help="Number of epochs (overrides config)")
    parser.add_argument("--seed", type=int, default=None, help="Random seed (overrides config)")
    parser.add_argument("--build-vocab", action="store_true", help="Build the vocabulary from the corpus first")
    parser.add_argument("--resume", action="store_true", help="Resume from the latest checkpoint")
    parser.add_argument("--plot-loss", type=str, default=None, help="Save the per-epoch loss curve to this image")
    return parser


def config_from_args(args):
    overrides = {
        "vocab_path": args.vocab,
        "data_dir": args.data_dir,
        "checkpoint_dir": args.checkpoint_dir,
        "epochs": args.epochs,
        "seed": args.seed,
    }
    if args.config:
        return Config.from_json(args.config, **overrides)
    return Config(**{k: v for k, v in overrides.items() if v is not None})


def main(argv=None):
    args = build_parser().parse_args(argv)

    try:
        config = config_from_args(args)
        print("Loading data...")
        vocab, examples = load_training_data(config, build_vocab=args.build_vocab)
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    generator = make_generator(config.seed)

    model = optimizer = scheduler = None
    start_epoch = 1
    if args.resume:
        try:
            model, optimizer, scheduler, start_epoch = resume(config, vocab)
        except (OSError, ValueError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    if model is None:
        print("Initializing model...")
        model = Seq2Seq(vocab.num_words, config.embedding_size, config.hidden_size,
                        config.num_layers, generator=generator)

    # Check if we have already reached the target number of epochs
    if start_epoch > config.epochs:
        print(f"Model already trained to {start_epoch - 1} epochs. "
              f"Increase the 'epochs' setting to train further.")
        return 0

    print(f"Starting training from epoch {start_epoch} to {config.epochs}...")
    epoch_losses = train_epochs(model, examples, config, generator, eos_id=vocab.eos_id,
                                start_epoch=start_epoch, optimizer=optimizer, scheduler=scheduler,
                                save_checkpoints=True, vocab=vocab)

    if args.plot_loss and epoch_losses:
        plot_loss_curve(epoch_losses, args.plot_loss)

    print("\nTraining completely finished!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
