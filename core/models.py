"""
CORE App - Shared records for UJANI

Handles: failures of outbound collaborators (WhatsApp sends, PSP requests)
"""

from django.db import models


class FailureChannel(models.TextChoices):
    """Collaborator that failed."""
    WHATSAPP = 'whatsapp', 'WhatsApp'
    PSP = 'psp', 'Payment provider'


class DeliveryFailure(models.Model):
    """
    An outbound side effect that could not be completed.

    The conversation or payment that triggered it stays committed;
    this record is what the admin sees.
    """

    channel = models.CharField(
        max_length=20,
        choices=FailureChannel.choices,
        verbose_name="Channel"
    )
    recipient = models.CharField(max_length=32, blank=True, verbose_name="Recipient")
    reference = models.CharField(
        max_length=64,
        blank=True,
        verbose_name="Reference",
        help_text="Order code or inbound message id"
    )
    error = models.TextField(verbose_name="Error")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = "Delivery failure"
        verbose_name_plural = "Delivery failures"
        ordering = ['-created_at', '-id']

    def __str__(self):
        return f"{self.channel} -> {self.recipient or '?'} | {self.error[:60]}"

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'channel': self.channel,
            'recipient': self.recipient,
            'reference': self.reference,
            'error': self.error,
            'created_at': self.created_at.isoformat(),
        }
