# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

from typing import List, Optional, Union

import torch
from torch import Tensor, nn

from epiflow.neural_nets.embedding_nets.base import SequenceSummarizer
from epiflow.neural_nets.embedding_nets.fully_connected import FCEmbedding
from epiflow.utils.errors import InvalidConditioningError


def causal_conv1d(
    in_channels: int,
    out_channels: int,
    kernel_size: int,
    dilation: int = 1,
    stride: int = 1,
) -> nn.Module:
    """Returns a causal convolution by left padding the input

    Args:
        in_channels: number of input channels
        out_channels: number of output channels wanted
        kernel_size: wanted kernel size
        dilation: dilation to use in the convolution.
        stride: stride to use in the convolution.
            Stride and dilation cannot both be > 1.

    Returns:
        An nn.Sequential object that represents a 1D causal convolution.
    """
    assert not (dilation > 1 and stride > 1), (
        "we don't allow combining stride with dilation."
    )
    padding_size = dilation * (kernel_size - 1)
    padding = nn.ZeroPad1d(padding=(padding_size, 0))
    conv_layer = nn.Conv1d(
        in_channels=in_channels,
        out_channels=out_channels,
        kernel_size=kernel_size,
        dilation=dilation,
        stride=stride,
        padding=0,
    )
    return nn.Sequential(padding, conv_layer)


class ConvSummaryNet(SequenceSummarizer):
    """Summarizer for fixed-length case-count sequences built from 1D convolutions.

    A stack of (by default causal, dilated) convolutions keeps the length of the
    sequence, global average pooling collapses the time axis and a small
    fully-connected head produces the summary. Every sequence is summarized as a
    whole, so query times are not supported.
    """

    def __init__(
        self,
        num_timepoints: int,
        output_dim: int = 20,
        out_channels_per_layer: Optional[List[int]] = None,
        num_conv_layers: int = 3,
        kernel_size: int = 3,
        dilation: Union[str, List[int]] = "exponential",
        causal: bool = True,
        activation: nn.Module = nn.LeakyReLU(inplace=True),
        num_linear_layers: int = 2,
        num_linear_units: int = 50,
        log_scale: bool = True,
    ):
        """
        Args:
            num_timepoints: Length `T` of the observed sequences.
            output_dim: Size of the summary vector.
            out_channels_per_layer: Channels of each convolution, defaults to 16 in
                every layer.
            num_conv_layers: Number of convolutional layers.
            kernel_size: Kernel size of all convolutions.
            dilation: "none" (dilation 1 everywhere), "exponential" (doubling every
                layer) or a list with one dilation per layer. Only used if `causal`.
            causal: Whether to left-pad the convolutions such that the feature at
                step `k` only depends on observations up to `k`. Otherwise
                symmetric "same" padding is used.
            activation: Activation between the convolutions.
            num_linear_layers: Layers of the fully-connected head (minimum 2).
            num_linear_units: Hidden units of the fully-connected head.
            log_scale: Whether to apply `log1p` to the counts before the
                convolutions.
        """
        super().__init__(num_timepoints, output_dim, uses_query_time=False)

        if out_channels_per_layer is None:
            out_channels_per_layer = [16] * num_conv_layers
        assert len(out_channels_per_layer) == num_conv_layers, (
            "out_channels_per_layer needs as many entries as num_conv_layers."
        )

        if isinstance(dilation, str):
            if dilation == "exponential":
                dilation_per_layer = [2**i for i in range(num_conv_layers)]
            elif dilation == "none":
                dilation_per_layer = [1] * num_conv_layers
            else:
                raise ValueError(
                    f"{dilation} is not a valid option, please use \"none\", "
                    "\"exponential\" or pass a list of dilation sizes."
                )
        else:
            dilation_per_layer = list(dilation)
        assert len(dilation_per_layer) == num_conv_layers, (
            "dilation needs as many entries as num_conv_layers."
        )

        self.log_scale = log_scale
        self.causal = causal

        conv_layers = []
        for ll in range(num_conv_layers):
            in_channels = 1 if ll == 0 else out_channels_per_layer[ll - 1]
            if causal:
                conv_layer = causal_conv1d(
                    in_channels,
                    out_channels_per_layer[ll],
                    kernel_size,
                    dilation=dilation_per_layer[ll],
                )
            else:
                conv_layer = nn.Conv1d(
                    in_channels=in_channels,
                    out_channels=out_channels_per_layer[ll],
                    kernel_size=kernel_size,
                    padding="same",
                )
            conv_layers += [conv_layer, activation]
        self.cnn_subnet = nn.Sequential(*conv_layers)
        self.pooling_layer = nn.AdaptiveAvgPool1d(1)

        self.linear_subnet = FCEmbedding(
            input_dim=out_channels_per_layer[-1],
            output_dim=output_dim,
            num_layers=num_linear_layers,
            num_hiddens=num_linear_units,
        )

    def summarize(
        self, sequence: Tensor, query_time: Optional[Tensor] = None
    ) -> Tensor:
        if query_time is not None:
            raise InvalidConditioningError(
                "ConvSummaryNet summarizes whole sequences and does not accept query "
                "times, use RecurrentSummaryNet instead."
            )
        self._check_sequence(sequence)
        batch_size = sequence.shape[0]

        if self.log_scale:
            sequence = torch.log1p(sequence.clamp(min=0.0))
        x = self.cnn_subnet(sequence.view(batch_size, 1, self.num_timepoints))
        x = self.pooling_layer(x).view(batch_size, -1)
        return self.linear_subnet(x)
