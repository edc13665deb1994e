from django.db import models


class ConversationSession(models.Model):
    """
    Durable copy of a customer's conversation (state, cart, checkout).
    Only used when UJANI_STORE_BACKEND = 'django'.
    """

    customer_id = models.CharField(max_length=32, unique=True, verbose_name="WhatsApp id")
    data = models.JSONField(default=dict)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Conversation session"
        verbose_name_plural = "Conversation sessions"

    def __str__(self):
        return f"{self.customer_id} | {self.data.get('state', '?')}"
