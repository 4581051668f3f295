# file: src/webapp_backend/errors.py
from typing import Optional

DEFAULT_RETRY_AFTER_SECONDS = 60


class ChannelAuditError(Exception):
    """Базовая ошибка пайплайна аудита каналов."""


class ValidationError(ChannelAuditError):
    """Кривой ввод: отклоняем до любых внешних вызовов, не ретраим."""


class InvalidChannelLinkError(ValidationError):
    pass


class BatchValidationError(ValidationError):
    pass


class RateLimitedError(ChannelAuditError):
    """
    Upstream вернул 429 и ретраи кончились.
    retry_after - подсказка клиенту (секунды), сколько подождать.
    """

    def __init__(self, message: str, retry_after: Optional[int] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after if retry_after is not None else DEFAULT_RETRY_AFTER_SECONDS


class UpstreamUnavailableError(ChannelAuditError):
    """Не-429 ошибка от Telegram data API или от сервиса оценки."""


class MalformedAssessmentError(ChannelAuditError):
    """Ответ модели не разбирается в ожидаемый JSON - жёсткая ошибка, без дефолтов."""


class PersistenceError(ChannelAuditError):
    pass


class NotFoundError(ChannelAuditError):
    pass
