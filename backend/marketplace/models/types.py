from sqlalchemy import Enum as SAEnum


class CaseInsensitiveEnum(SAEnum):
    """Enum column type storing enum values and accepting any casing on write.

    ``"pending"``, ``"PENDING"`` and ``AppointmentStatus.PENDING`` all persist
    as the canonical value (``"Pending"``).
    """

    cache_ok = True

    def __init__(self, enum_cls, **kwargs):
        self._enum_cls = enum_cls
        self._enum_kwargs = kwargs.copy()
        kwargs.setdefault("values_callable", lambda enum: [e.value for e in enum])
        kwargs.setdefault("native_enum", False)
        kwargs.setdefault("length", 32)
        super().__init__(enum_cls, **kwargs)

    def adapt(self, impltype, **kw):
        params = {**self._enum_kwargs, **kw}
        return CaseInsensitiveEnum(self._enum_cls, **params)

    def _canonical(self, value):
        if isinstance(value, self._enum_cls):
            return value.value
        lowered = str(value).lower()
        for member in self._enum_cls:
            if member.value.lower() == lowered or member.name.lower() == lowered:
                return member.value
        return value

    def bind_processor(self, dialect):
        parent = super().bind_processor(dialect)

        def process(value):
            if value is None:
                return None
            value = self._canonical(value)
            if parent:
                return parent(value)
            return value

        return process
