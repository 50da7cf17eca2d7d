from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional, List, Iterable
from uuid import UUID

from benefits_worker.domain.value_objects import GroupType, VerificationStatus


def add_one_year(moment: datetime) -> datetime:
    """ Прибавить календарный год; 29 февраля переходит на 1 марта """
    try:
        return moment.replace(year=moment.year + 1)
    except ValueError:
        return moment.replace(year=moment.year + 1, month=3, day=1)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class UserGroupMembership:
    """Заявленная пользователем принадлежность к социальной группе"""
    type: GroupType
    status: VerificationStatus = VerificationStatus.PENDING
    verified_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    error_message: str = ""

    @property
    def is_pending(self) -> bool:
        return self.status is VerificationStatus.PENDING

    def verify(self, now: datetime) -> 'UserGroupMembership':
        """ Подтвердить группу на год """
        return replace(
            self,
            status=VerificationStatus.VERIFIED,
            verified_at=now,
            rejected_at=None,
            expires_at=add_one_year(now),
            error_message=""
        )

    def reject(self, now: datetime, error_message: str = "") -> 'UserGroupMembership':
        """ Отклонить группу (с описанием ошибки, если проверка не состоялась) """
        return replace(
            self,
            status=VerificationStatus.REJECTED,
            rejected_at=now,
            verified_at=None,
            expires_at=None,
            error_message=error_message
        )

    @classmethod
    def pending(cls, group_type: GroupType) -> 'UserGroupMembership':
        return cls(type=group_type)

    @classmethod
    def from_dict(cls, data: dict) -> 'UserGroupMembership':
        """ Создание объекта из словаря (формат JSON-колонки group_type) """
        return cls(
            type=GroupType(data['type']),
            status=VerificationStatus(data.get('status', VerificationStatus.PENDING.value)),
            verified_at=_parse_dt(data.get('verified_at')),
            rejected_at=_parse_dt(data.get('rejected_at')),
            expires_at=_parse_dt(data.get('expires_at')),
            error_message=data.get('error_message') or ""
        )

    def to_dict(self) -> dict:
        """ Преобразование в словарь """
        return {
            'type': self.type.value,
            'status': self.status.value,
            'verified_at': _format_dt(self.verified_at),
            'rejected_at': _format_dt(self.rejected_at),
            'expires_at': _format_dt(self.expires_at),
            'error_message': self.error_message
        }


@dataclass
class User:
    """Пользователь платформы с его социальными группами"""
    user_id: UUID
    snils: Optional[str] = None
    email: Optional[str] = None
    groups: List[UserGroupMembership] = field(default_factory=list)

    def membership(self, group_type: GroupType) -> Optional[UserGroupMembership]:
        for membership in self.groups:
            if membership.type is group_type:
                return membership
        return None

    def request_groups(self, group_types: Iterable[GroupType]) -> List[UserGroupMembership]:
        """
        Заново выставить запрошенные группы в pending.

        Группы других типов сохраняются как есть, порядок существующих
        записей не меняется, новые добавляются в конец.
        """
        requested = list(dict.fromkeys(group_types))
        updated = [
            UserGroupMembership.pending(m.type) if m.type in requested else m
            for m in self.groups
        ]
        known = {m.type for m in updated}
        updated.extend(UserGroupMembership.pending(t) for t in requested if t not in known)
        self.groups = updated
        return updated
