import random
from dataclasses import dataclass, field
from typing import Callable, Sequence

from castctl.domain.errors import NotFoundError

AddressPolicy = Callable[[Sequence[str]], str]


def first_address(addresses: Sequence[str]) -> str:
    if not addresses:
        raise NotFoundError("no address to connect to")
    return addresses[0]


def random_address(addresses: Sequence[str]) -> str:
    if not addresses:
        raise NotFoundError("no address to connect to")
    return random.choice(list(addresses))


@dataclass
class RoundRobinAddresses:
    """Hands out the next candidate on every call.

    Each connect still makes a single attempt; a supervisor that reconnects
    after a failure gets the following address on its next try.
    """

    _next: int = field(default=0)

    def __call__(self, addresses: Sequence[str]) -> str:
        if not addresses:
            raise NotFoundError("no address to connect to")
        address = addresses[self._next % len(addresses)]
        self._next += 1
        return address


def address_policy_by_name(name: str) -> AddressPolicy:
    if name == "first":
        return first_address
    if name == "random":
        return random_address
    if name == "round_robin":
        return RoundRobinAddresses()
    raise ValueError(f"Unknown address policy: {name}")
