class LedgerError(Exception):
    """Base class for errors raised by the reconciliation engine."""


class VerificationError(LedgerError):
    """The notification could not be authenticated; the sender should not retry."""


class MissingSignature(VerificationError):
    pass


class InvalidSignature(VerificationError):
    pass


class InvalidPayload(VerificationError):
    pass


class MissingSecret(LedgerError):
    """No webhook secret is configured. This is a server fault, not the caller's."""


class PlanNotFound(LedgerError):
    def __init__(self, plan_id):
        super().__init__(f"Plan {plan_id} not found")
        self.plan_id = plan_id


class UnresolvablePayment(LedgerError):
    """No existing record matches and the notification carries no plan to seed one."""


class SessionNotFound(LedgerError):
    def __init__(self, session_id):
        super().__init__(f"Checkout session {session_id} not found")
        self.session_id = session_id
