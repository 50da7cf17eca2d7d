"""
Domain exceptions - исключения бизнес-логики и очереди задач

Атрибут retryable подсказывает диспетчеру, имеет ли смысл повторять задачу.
"""


class DomainException(Exception):
    """Базовое исключение для domain слоя"""
    retryable = True


class UserNotFoundException(DomainException):
    """Пользователь не найден"""
    retryable = False


class ExternalCallError(DomainException):
    """Ошибка вызова внешнего сервиса"""
    pass


class VerificationCallFailed(ExternalCallError):
    """Сервис проверки социальных групп не ответил корректно"""
    pass


class EmailDeliveryFailed(ExternalCallError):
    """Письмо не удалось отправить"""
    pass


class InvalidEmailError(DomainException):
    """Письмо не проходит валидацию (адрес, тема, тело)"""
    retryable = False


class PersistenceFailed(DomainException):
    """Ошибка чтения/записи в хранилище"""
    pass


class TaskException(Exception):
    """Базовое исключение очереди задач"""
    retryable = False


class SerializationError(TaskException):
    """Payload задачи не удалось сериализовать"""
    pass


class PayloadDecodeError(TaskException):
    """Payload задачи поврежден или не соответствует схеме"""
    pass


class TaskNotRoutedError(TaskException):
    """Для задачи не зарегистрирован обработчик"""
    pass


class TaskInterrupted(TaskException):
    """Выполнение задачи прервано (остановка воркера или истекшая аренда)"""
    retryable = True


class CircuitBreakerOpenException(ExternalCallError):
    """Вызовы временно заблокированы предохранителем"""
    pass


def is_retryable(exc: BaseException) -> bool:
    """ Решить, стоит ли повторять задачу после такой ошибки """
    return bool(getattr(exc, "retryable", True))
