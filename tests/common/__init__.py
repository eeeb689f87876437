"""Sample tables, entities and repositories used by the test-suite."""

from tests.common.entities import Order, User
from tests.common.repositories import OrderRepository, UserRepository
from tests.common.tables import orders, users

__all__ = ["Order", "OrderRepository", "User", "UserRepository", "orders", "users"]
