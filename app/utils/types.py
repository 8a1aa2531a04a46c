from typing import NamedTuple
from decimal import Decimal

class BlockHeader(NamedTuple):
    number: int
    timestamp: int

class TokenTransfer(NamedTuple):
    tx_hash: str
    block_number: int
    from_address: str
    to_address: str
    raw_value: int
    decimals: int

    @property
    def amount(self) -> Decimal:
        return Decimal(self.raw_value).scaleb(-self.decimals)
