from coffee_contracts.models.user import User
from coffee_contracts.models.contract import Contract
from coffee_contracts.models.contract_copy import ContractCopy
from coffee_contracts.models.contract_event import ContractEvent
from coffee_contracts.models.commission_refund import CommissionRefund
from coffee_contracts.models.audit_log import AuditLog

__all__ = [
    "User",
    "Contract",
    "ContractCopy",
    "ContractEvent",
    "CommissionRefund",
    "AuditLog",
]
