# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

"""Various PyTorch utility functions."""

import warnings
from typing import Optional, Union

import torch
from torch import Tensor, nn
from torch.distributions import Independent, Uniform

ScalarFloat = Union[Tensor, float]


def process_device(device: str) -> str:
    """Set and return the default device to cpu or cuda.

    Throws an AssertionError if the device string is not recognized.
    """

    if device == "cpu":
        return "cpu"
    else:
        warnings.warn(
            "GPU was selected as a device for training the neural network. "
            "Speed ups are only to be expected for large recurrent or convolutional "
            "summary networks; the coupling blocks themselves are small.",
            stacklevel=2,
        )
        current_gpu_index = torch.cuda.current_device()
        if device == "cuda":
            return f"cuda:{current_gpu_index}"
        else:
            assert device == f"cuda:{current_gpu_index}", (
                f"Unrecognized device {device}, "
                "should be one of [`cpu`, `cuda`, f`cuda:{index}`]"
            )
            return device


def create_alternating_binary_mask(features: int, even: bool = True) -> Tensor:
    """
    Creates a binary mask of a given dimension which alternates its masking.

    :param features: Dimension of mask.
    :param even: If True, even values are assigned 1s, odd 0s. If False, vice versa.
    :return: Alternating binary mask of type torch.Tensor.
    """
    mask = torch.zeros(features).byte()
    start = 0 if even else 1
    mask[start::2] += 1
    return mask


def create_mid_split_binary_mask(features: int, first_half: bool = True) -> Tensor:
    """
    Creates a binary mask of a given dimension which splits its masking at the midpoint.

    :param features: Dimension of mask.
    :param first_half: If True, the first half is assigned 1s, otherwise the second.
    :return: Binary mask split at midpoint of type torch.Tensor
    """
    mask = torch.zeros(features).byte()
    midpoint = features // 2 if features % 2 == 0 else features // 2 + 1
    if first_half:
        mask[:midpoint] += 1
    else:
        mask[midpoint:] += 1
    return mask


def ensure_batched(theta: Tensor) -> Tensor:
    r"""
    Return a tensor that has a batch dimension, i.e. has shape
     (1, shape_of_single_entry)

     Args:
         theta: tensor of shape (n) or (1,n)
     Returns:
         Batched tensor
    """

    if theta.ndim == 1:
        theta = theta.unsqueeze(0)

    return theta


class BoxUniform(Independent):
    def __init__(
        self,
        low: ScalarFloat,
        high: ScalarFloat,
        reinterpreted_batch_ndims: int = 1,
        device: str = "cpu",
    ):
        """Multidimensional uniform distribution defined on a box.

        A `Uniform` distribution initialized with e.g. a parameter vector low or high of
         length 3 will result in a /batch/ dimension of length 3. A log_prob evaluation
         will then output three numbers, one for each of the independent Uniforms in
         the batch. Instead, a `BoxUniform` initialized in the same way has three
         /event/ dimensions, and returns a scalar log_prob corresponding to whether
         the evaluated point is in the box defined by low and high or outside.

        Args:
            low: lower range (inclusive).
            high: upper range (exclusive).
            reinterpreted_batch_ndims (int): the number of batch dims to
                                             reinterpret as event dims.
            device: device of the prior, defaults to "cpu".
        """
        device = process_device(device)
        super().__init__(
            Uniform(
                low=torch.as_tensor(
                    low, dtype=torch.float32, device=torch.device(device)
                ),
                high=torch.as_tensor(
                    high, dtype=torch.float32, device=torch.device(device)
                ),
                validate_args=False,
            ),
            reinterpreted_batch_ndims,
        )


def check_net_device(
    net: nn.Module, device: str, message: Optional[str] = None
) -> nn.Module:
    """
    Check whether a net is on the desired device and move it there if not.

    Args:
        net: neural network.
        device: desired device.
        message: Warning to emit if the net has to be moved.

    Returns:
        Neural network on the desired device.
    """

    parameters = list(net.parameters())
    if isinstance(net, nn.Identity) or not parameters:
        return net
    if str(parameters[0].device) != str(device):
        warnings.warn(
            message or f"Network is not on the correct device. Moving it to {device}.",
            stacklevel=2,
        )
        return net.to(device)
    else:
        return net
