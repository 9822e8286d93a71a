from .auth import User, SessionToken, ROLES, ROLE_ADMIN, ROLE_USER
from .inventory import InventoryItem, SIZES
from .sales import (
    Sale,
    SaleLine,
    PAYMENT_METHODS,
    DEFAULT_PAYMENT_METHOD,
    SALE_STATUS_ACTIVE,
    SALE_STATUS_VOIDED,
)

__all__ = [
    'User', 'SessionToken', 'ROLES', 'ROLE_ADMIN', 'ROLE_USER',
    'InventoryItem', 'SIZES',
    'Sale', 'SaleLine', 'PAYMENT_METHODS', 'DEFAULT_PAYMENT_METHOD',
    'SALE_STATUS_ACTIVE', 'SALE_STATUS_VOIDED',
]
