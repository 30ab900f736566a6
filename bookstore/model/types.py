# bookstore/model/types.py
from enum import Enum

from sqlalchemy.types import String, TypeDecorator


class ValueEnum(TypeDecorator):
    """Persist an ``Enum`` by its value; rows holding anything else fail to load."""
    impl = String
    cache_ok = True

    def __init__(self, enum_cls: type[Enum], length: int = 32):
        super().__init__(length)
        self.enum_cls = enum_cls

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return self.enum_cls(value).value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return self.enum_cls(value)

    @property
    def python_type(self):
        return self.enum_cls
