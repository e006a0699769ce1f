"""Devices on which the engine materializes values.

The engine only needs one operation from a device: placing a value on
it. A device is therefore anything with a `name` and a `place` method.

We ship the CPU device, backed by NumPy. The `gpu` tag is known to the
engine but has no bundled backend: register one using `register` before
moving a network to it. For example:

    >>> from dagnn.engine import device
    >>>
    >>> class CupyDevice:
    ...     name = device.GPU
    ...     def place(self, value):
    ...         return cupy.asarray(value)
    >>>
    >>> device.register(CupyDevice())

The default device tag is read from the `DAGNN_DEVICE` environment
variable and falls back to `cpu` when unset.
"""

# SPDX-License-Identifier: Apache-2.0

import os
from typing import Any, Callable, Protocol, runtime_checkable

import numpy as np

CPU = "cpu"
"""Tag of the host device."""

GPU = "gpu"
"""Tag of the accelerator device."""

known_tags: tuple[str, ...] = (CPU, GPU)
"""Device tags the engine knows about (more can be registered)."""


class UnsupportedDevice(Exception):
    """Raised when there is no backend registered for a device tag."""


@runtime_checkable
class Device(Protocol):
    """Capability of placing values on a specific device."""

    name: str

    def place(self, value: Any) -> Any:
        """Return a copy or view of value materialized on this device."""
        ...  # pragma: no cover


class CPUDevice:
    """The host device, where values are NumPy arrays."""

    name = CPU

    def place(self, value: Any) -> np.ndarray:
        """Materialize the value as a NumPy array."""
        return np.asarray(value)


_: Device = CPUDevice()

_devices: dict[str, Device] = {CPU: CPUDevice()}
"""Maps a device tag to the corresponding backend."""


def register(device: Device) -> None:
    """Register (or replace) the backend for `device.name`."""
    _devices[device.name] = device


def lookup(name: str) -> Device:
    """Return the backend for the given device tag.

    Raises
    ------
        UnsupportedDevice: if no backend is registered for the tag.
    """
    try:
        return _devices[name]
    except KeyError:
        raise UnsupportedDevice(f"device: no backend registered for '{name}'")


def from_environ(
    varname: str = "DAGNN_DEVICE",
    getenv: Callable[[str], str | None] = os.getenv,
) -> str:
    """Read the default device tag from a specific environment variable.

    The value is case-insensitive and surrounding whitespace is ignored.
    An unset or empty variable means `cpu`.

    Arguments
    ---------
    varname: the name of the environment variable (default: `DAGNN_DEVICE`).
    getenv: the function to read the environment variable (default: os.getenv).
    """
    return (getenv(varname) or "").strip().lower() or CPU


default = from_environ()
"""Default device tag initialized from the `DAGNN_DEVICE` environment variable."""
