"""Attribution of a stage transition to an operator, a device and a reason."""

from ...shared.base import ValueObject

SYSTEM_OPERATOR_ID = "SYSTEM"
SYSTEM_DEVICE_ID = "AUTO_SCHEDULER"


class Attribution(ValueObject):
    """Who applied a transition, from where, and why."""

    operator_id: str
    device_id: str
    reason_note: str | None = None
    is_automatic: bool = False

    @classmethod
    def system(
        cls,
        reason_note: str,
        operator_id: str = SYSTEM_OPERATOR_ID,
        device_id: str = SYSTEM_DEVICE_ID,
    ) -> "Attribution":
        """Attribution used by the automatic scheduler."""
        return cls(
            operator_id=operator_id,
            device_id=device_id,
            reason_note=reason_note,
            is_automatic=True,
        )

    @classmethod
    def manual(
        cls, operator_id: str, device_id: str = "MANUAL", reason_note: str | None = None
    ) -> "Attribution":
        return cls(
            operator_id=operator_id,
            device_id=device_id,
            reason_note=reason_note,
            is_automatic=False,
        )

    @property
    def initiator(self) -> str:
        return "system" if self.is_automatic else "manual"
