from sqlalchemy import BigInteger
from sqlalchemy.types import TypeDecorator

from cashflow_bridge.core.money import Money


class MoneyType(TypeDecorator):
    """Stores ``Money`` as a BIGINT of cents."""

    impl = BigInteger
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return Money.of(value).cents

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Money(int(value))

    @property
    def python_type(self):
        return Money
