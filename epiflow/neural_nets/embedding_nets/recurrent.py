# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

from typing import Optional

import torch
from torch import Tensor, nn

from epiflow.neural_nets.embedding_nets.base import SequenceSummarizer
from epiflow.neural_nets.embedding_nets.fully_connected import FCEmbedding

_CELLS = {"lstm": nn.LSTM, "gru": nn.GRU}


class RecurrentSummaryNet(SequenceSummarizer):
    r"""Causal summarizer that reads the sequence with a multi-layer LSTM or GRU.

    The recurrence produces one hidden state per time step. The summary for query
    time $t$ is the last layer's hidden state after consuming observation $t$,
    gathered separately for every example of the batch. Since the recurrence is
    unidirectional, that state does not depend on observations after $t$, so one
    flow can be trained on all truncation lengths at once.

    Conditioning passed to `forward` has the query time prepended,
    `(batch_dim, 1 + num_timepoints)`.
    """

    def __init__(
        self,
        num_timepoints: int,
        output_dim: int = 20,
        hidden_dim: int = 64,
        num_layers: int = 2,
        cell: str = "lstm",
        dropout: float = 0.0,
        num_linear_layers: int = 2,
        num_linear_units: int = 50,
        log_scale: bool = True,
    ):
        """
        Args:
            num_timepoints: Length `T` of the observed sequences.
            output_dim: Size of the summary vector.
            hidden_dim: Hidden state size of the recurrence.
            num_layers: Number of stacked recurrent layers.
            cell: "lstm" or "gru".
            dropout: Dropout between recurrent layers.
            num_linear_layers: Layers of the fully-connected head (minimum 2).
            num_linear_units: Hidden units of the fully-connected head.
            log_scale: Whether to apply `log1p` to the counts.
        """
        super().__init__(num_timepoints, output_dim, uses_query_time=True)
        if cell not in _CELLS:
            raise ValueError(f"Unknown cell {cell}, use one of {list(_CELLS)}.")

        self.log_scale = log_scale
        self.hidden_dim = hidden_dim
        self.rnn = _CELLS[cell](
            input_size=1,
            hidden_size=hidden_dim,
            num_layers=num_layers,
            batch_first=True,
            dropout=dropout if num_layers > 1 else 0.0,
        )
        self.linear_subnet = FCEmbedding(
            input_dim=hidden_dim,
            output_dim=output_dim,
            num_layers=num_linear_layers,
            num_hiddens=num_linear_units,
        )

    def hidden_states(self, sequence: Tensor) -> Tensor:
        """Return the last layer's hidden state at every step,
        shape `(batch_dim, num_timepoints, hidden_dim)`."""
        self._check_sequence(sequence)
        if self.log_scale:
            sequence = torch.log1p(sequence.clamp(min=0.0))
        states, _ = self.rnn(sequence.unsqueeze(-1))
        return states

    def summarize(
        self, sequence: Tensor, query_time: Optional[Tensor] = None
    ) -> Tensor:
        """Summary at `query_time`, or after the full sequence if it is None."""
        batch_size = sequence.shape[0]
        if query_time is None:
            query_time = torch.full(
                (batch_size,), self.num_timepoints, device=sequence.device
            )
        query_time = self._check_query_time(query_time, batch_size).to(
            sequence.device
        )

        states = self.hidden_states(sequence)
        # 1-indexed query time -> 0-indexed position in the sequence.
        index = (query_time - 1).view(batch_size, 1, 1).expand(-1, 1, self.hidden_dim)
        gathered = torch.gather(states, dim=1, index=index).squeeze(1)
        return self.linear_subnet(gathered)
