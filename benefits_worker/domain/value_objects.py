from dataclasses import dataclass
from enum import Enum
from typing import Optional


class GroupType(str, Enum):
    """Социальные группы, на льготы которых может претендовать пользователь"""
    PENSIONERS = "pensioners"
    DISABLED = "disabled"
    YOUNG_FAMILIES = "young_families"
    LOW_INCOME = "low_income"
    STUDENTS = "students"
    LARGE_FAMILIES = "large_families"
    CHILDREN = "children"
    VETERANS = "veterans"

    @classmethod
    def is_valid(cls, value: str) -> bool:
        return value in cls._value2member_map_


class VerificationStatus(str, Enum):
    """Статус подтверждения принадлежности к группе"""
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class CheckOutcome(Enum):
    """Итог проверки одной группы внешним сервисом"""
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    CALL_FAILED = "call_failed"


# Статусы в ответе сервиса проверки
CHECKER_STATUS_CONFIRMED = "подтвержден"
CHECKER_STATUS_REJECTED = "отклонен"


@dataclass(frozen=True)
class GroupCheckResult:
    """ Результат проверки одной группы """
    group: GroupType
    outcome: CheckOutcome
    reason: Optional[str] = None

    def __post_init__(self):
        if self.outcome is CheckOutcome.CALL_FAILED and not self.reason:
            raise ValueError("Failed check must carry a reason")

    @classmethod
    def from_checker_status(cls, group: GroupType, status: str) -> 'GroupCheckResult':
        """ Всё, что не "подтвержден", считается отказом """
        if status == CHECKER_STATUS_CONFIRMED:
            return cls(group, CheckOutcome.CONFIRMED)
        return cls(group, CheckOutcome.REJECTED)

    @classmethod
    def call_failed(cls, group: GroupType, reason: str) -> 'GroupCheckResult':
        return cls(group, CheckOutcome.CALL_FAILED, reason)
