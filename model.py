import os
import glob
import math
import torch
import torch.nn as nn


class TokenEmbedding(nn.Module):
    def __init__(self, vocab_size, embedding_size):
        super(TokenEmbedding, self).__init__()
        self.vocab_size = vocab_size
        self.embedding_size = embedding_size

        # Converts word indices into dense vectors
        self.embedding = nn.Embedding(vocab_size, embedding_size)

    def reset_parameters(self, generator=None):
        nn.init.xavier_uniform_(self.embedding.weight, generator=generator)

    def _check_range(self, ids):
        # nn.Embedding's own failure is device-dependent, so refuse bad ids up front
        if ids.numel() and (int(ids.min()) < 0 or int(ids.max()) >= self.vocab_size):
            raise IndexError(
                f"Token id out of range [0, {self.vocab_size}): {ids.tolist()}"
            )

    def lookup(self, token_id):
        # -> (embedding_size,)
        ids = torch.as_tensor(token_id, dtype=torch.long)
        if ids.dim() != 0:
            raise ValueError("lookup expects a single token id")
        self._check_range(ids)
        return self.embedding(ids)

    def forward(self, ids):
        # ids shape: (sequence_length,) -> (sequence_length, embedding_size)
        ids = torch.as_tensor(ids, dtype=torch.long)
        self._check_range(ids)
        return self.embedding(ids)


class RecurrentStack(nn.Module):
    """
    LSTM cells composed in series: layer 1's output is layer 2's input. Holds
    no state of its own, the caller passes (h, c) in and gets the new pair back.
    h and c are both shaped (num_layers, hidden_size), one row per layer.
    """

    def __init__(self, input_size, hidden_size, num_layers=2):
        super(RecurrentStack, self).__init__()
        self.input_size = input_size
        self.hidden_size = hidden_size
        self.num_layers = num_layers

        self.cells = nn.ModuleList(
            [nn.LSTMCell(input_size if layer == 0 else hidden_size, hidden_size)
             for layer in range(num_layers)]
        )

    def reset_parameters(self, generator=None):
        # Same range nn.LSTMCell uses by default, but drawn from our generator
        bound = 1.0 / math.sqrt(self.hidden_size)
        for weight in self.cells.parameters():
            nn.init.uniform_(weight, -bound, bound, generator=generator)

    def init_state(self):
        zeros = torch.zeros(self.num_layers, self.hidden_size)
        return zeros, zeros.clone()

    def step(self, input_vector, state):
        """
        Advances every layer by one time step.

        input_vector: (input_size,)
        state: (h, c), each (num_layers, hidden_size)
        returns: output (hidden_size,), (h, c) for the next step
        """
        hidden, cell = state
        next_hidden = []
        next_cell = []

        output = input_vector
        for layer, lstm_cell in enumerate(self.cells):
            h, c = lstm_cell(output, (hidden[layer], cell[layer]))
            next_hidden.append(h)
            next_cell.append(c)
            output = h

        return output, (torch.stack(next_hidden), torch.stack(next_cell))

    def forward(self, input_vector, state):
        return self.step(input_vector, state)


class OutputHead(nn.Module):
    def __init__(self, hidden_size, vocab_size):
        super(OutputHead, self).__init__()
        # Linear layer maps the hidden state to a score for every word in the vocabulary
        self.out = nn.Linear(hidden_size, vocab_size)

    def reset_parameters(self, generator=None):
        nn.init.xavier_uniform_(self.out.weight, generator=generator)
        nn.init.zeros_(self.out.bias)

    def logits(self, hidden):
        return self.out(hidden)

    def forward(self, hidden):
        scores = self.logits(hidden)
        # Subtract the max before exponentiating so large scores can't overflow
        scores = scores - scores.max(dim=-1, keepdim=True).values
        exp_scores = torch.exp(scores)
        return exp_scores / exp_scores.sum(dim=-1, keepdim=True)


class Seq2Seq(nn.Module):
    """
    Embedding -> encoder step -> decoder step -> output head, one token at a
    time. The encoder's new state is what the decoder starts from, and the
    decoder's new state is handed back to the caller for the next token.
    """

    def __init__(self, vocab_size, embedding_size=300, hidden_size=512, num_layers=2, generator=None):
        super(Seq2Seq, self).__init__()
        self.vocab_size = vocab_size
        self.embedding_size = embedding_size
        self.num_layers = num_layers

        self.embedding = TokenEmbedding(vocab_size, embedding_size)
        self.encoder = RecurrentStack(embedding_size, hidden_size, num_layers)
        # The decoder reads the encoder's output, so its input is hidden_size wide
        self.decoder = RecurrentStack(hidden_size, hidden_size, num_layers)
        self.head = OutputHead(hidden_size, vocab_size)

        self.reset_parameters(generator)

    @property
    def hidden_size(self):
        return self.encoder.hidden_size

    def reset_parameters(self, generator=None):
        """Redraws every parameter from generator (the global RNG if None)."""
        self.embedding.reset_parameters(generator)
        self.encoder.reset_parameters(generator)
        self.decoder.reset_parameters(generator)
        self.head.reset_parameters(generator)

    def init_state(self):
        """Fresh zero (h, c) for the start of an independent sequence."""
        return self.encoder.init_state()

    def forward(self, token_id, state=None):
        if state is None:
            state = self.init_state()

        embedded = self.embedding.lookup(token_id)
        encoded, state = self.encoder.step(embedded, state)
        decoded, state = self.decoder.step(encoded, state)
        probs = self.head(decoded)

        return probs, state

    def dims(self):
        return {
            "vocab_size": self.vocab_size,
            "embedding_size": self.embedding_size,
            "hidden_size": self.hidden_size,
            "num_layers": self.num_layers,
        }


def checkpoint_path(checkpoint_dir, epoch):
    return os.path.join(checkpoint_dir, f"seq2seq_epoch_{epoch}.pth")


def get_latest_epoch(checkpoint_dir):
    """Finds the highest epoch number from the saved checkpoint files."""
    checkpoint_files = glob.glob(os.path.join(checkpoint_dir, "seq2seq_epoch_*.pth"))
    if not checkpoint_files:
        return None

    epochs = []
    for f in checkpoint_files:
        try:
            # Extract the integer from the filename (e.g., "seq2seq_epoch_10.pth" -> 10)
            epoch = int(os.path.basename(f).split('_')[-1].split('.')[0])
            epochs.append(epoch)
        except ValueError:
            continue

    return max(epochs) if epochs else None


def save_checkpoint(model, checkpoint_dir, epoch, optimizer=None, scheduler=None):
    os.makedirs(checkpoint_dir, exist_ok=True)
    checkpoint = {
        "epoch": epoch,
        "dims": model.dims(),
        "model": model.state_dict(),
    }
    if optimizer is not None:
        checkpoint["optimizer"] = optimizer.state_dict()
    if scheduler is not None:
        checkpoint["scheduler"] = scheduler.state_dict()

    path = checkpoint_path(checkpoint_dir, epoch)
    torch.save(checkpoint, path)
    return path


def load_checkpoint(path):
    """Rebuilds the model stored at path. Returns (model, checkpoint dict)."""
    checkpoint = torch.load(path, weights_only=True)
    model = Seq2Seq(**checkpoint["dims"])
    model.load_state_dict(checkpoint["model"])
    return model, checkpoint
