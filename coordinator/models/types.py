"""Column types shared by the coordinator models."""

from sqlalchemy import String
from sqlalchemy.types import TypeDecorator

UINT256_MAX = 2**256 - 1


class Uint256(TypeDecorator):
    """Unsigned 256-bit integer stored as decimal text.

    Numeric columns lose precision past 2**53 on some backends, so values are
    persisted as their exact base-10 representation and range-checked on write.
    """

    impl = String(78)
    cache_ok = True

    def process_bind_param(self, value: int | None, dialect) -> str | None:  # type: ignore[no-untyped-def]
        if value is None:
            return None
        value = int(value)
        if not 0 <= value <= UINT256_MAX:
            raise ValueError(f"Value out of uint256 range: {value}")
        return str(value)

    def process_result_value(self, value: str | None, dialect) -> int | None:  # type: ignore[no-untyped-def]
        if value is None:
            return None
        return int(value)
