from .auth import User, Role, UserRole, Permission, RolePermission
from .documents import SequenceCounter, Order, OrderItem, Payment, Quote, ExpenseOrder
from .audit import AuditLogEntry
from .authorization import AuthorizationRequest, EditRequest
from .notifications import Notification

__all__ = [
    'User', 'Role', 'UserRole', 'Permission', 'RolePermission',
    'SequenceCounter', 'Order', 'OrderItem', 'Payment', 'Quote', 'ExpenseOrder',
    'AuditLogEntry',
    'AuthorizationRequest', 'EditRequest',
    'Notification',
]
