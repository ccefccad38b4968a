"""Payment module — three-phase payment handshake."""

from tradeflow.payment.workflow import PaymentWorkflowEngine

__all__ = ["PaymentWorkflowEngine"]
