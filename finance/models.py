"""
FINANCE App - Orders & Payment Ledger for UJANI

Handles: Orders, Order Items, Payment Events, Payment Evidence
Used by core.persistence.DjangoStore; the conversation code only sees the
dataclasses in finance.orders.
"""

from django.db import models, transaction

from finance.orders import Order, OrderItem, PaymentEvent, PaymentEvidence
from logistics.services.pricing import DeliveryQuote


class PaymentStatus(models.TextChoices):
    """Derived from the ledger, never stored."""
    AWAITING = 'awaiting', 'Awaiting payment'
    PARTIAL = 'partial', 'Partially paid'
    PAID = 'paid', 'Paid'


class FulfillmentType(models.TextChoices):
    PICKUP = 'pickup', 'Pickup'
    DELIVERY = 'delivery', 'Delivery'


# Longest accepted payment event id or provider reference
PAYMENT_ID_MAX_LENGTH = 100


class PaymentMethodType(models.TextChoices):
    MANUAL = 'manual', 'Manual reconciliation'
    USSD = 'ussd', 'USSD push'
    CHECKOUT = 'checkout', 'Checkout link'


class OrderSequence(models.Model):
    """Last order number handed out per year."""

    year = models.PositiveIntegerField(primary_key=True)
    last_value = models.PositiveIntegerField(default=0)

    @classmethod
    @transaction.atomic
    def next_value(cls, year: int) -> int:
        sequence, _ = cls.objects.select_for_update().get_or_create(year=year)
        sequence.last_value += 1
        sequence.save(update_fields=['last_value'])
        return sequence.last_value


class OrderRecord(models.Model):
    """
    Immutable order. Payment status is computed from PaymentEventRecord rows.
    """

    order_id = models.CharField(max_length=32, unique=True, verbose_name="Order code")
    customer_id = models.CharField(max_length=32, db_index=True, verbose_name="WhatsApp id")
    customer_name = models.CharField(max_length=120, blank=True)
    contact_phone = models.CharField(max_length=32, blank=True)
    language = models.CharField(max_length=5, default='sw')

    total_tzs = models.PositiveIntegerField(verbose_name="Total (TZS)")
    fulfillment = models.CharField(max_length=10, choices=FulfillmentType.choices)

    # Frozen delivery quote (delivery orders only)
    delivery_quote = models.JSONField(null=True, blank=True)

    created_at = models.DateTimeField()

    class Meta:
        verbose_name = "Order"
        verbose_name_plural = "Orders"
        ordering = ['-created_at', '-id']

    def __str__(self):
        return f"{self.order_id} | {self.customer_id} | {self.total_tzs} TZS"

    def to_domain(self) -> Order:
        return Order(
            order_id=self.order_id,
            customer_id=self.customer_id,
            items=tuple(
                OrderItem(
                    product_id=line.product_id,
                    title=line.title,
                    unit_price_tzs=line.unit_price_tzs,
                    quantity=line.quantity,
                )
                for line in self.items.all()
            ),
            total_tzs=self.total_tzs,
            fulfillment=self.fulfillment,
            customer_name=self.customer_name,
            contact_phone=self.contact_phone,
            language=self.language,
            delivery_quote=DeliveryQuote.from_dict(self.delivery_quote),
            created_at=self.created_at,
        )


class OrderItemRecord(models.Model):
    order = models.ForeignKey(OrderRecord, on_delete=models.CASCADE, related_name='items')
    position = models.PositiveSmallIntegerField(default=0)
    product_id = models.CharField(max_length=64)
    title = models.CharField(max_length=120)
    unit_price_tzs = models.PositiveIntegerField()
    quantity = models.PositiveIntegerField()

    class Meta:
        ordering = ['order', 'position']

    def __str__(self):
        return f"{self.quantity} x {self.title}"


class PaymentEventRecord(models.Model):
    """
    Ledger entry. `event_id` is unique: a replayed event is never stored twice.
    """

    event_id = models.CharField(max_length=PAYMENT_ID_MAX_LENGTH, unique=True)
    order = models.ForeignKey(OrderRecord, on_delete=models.PROTECT, related_name='payment_events')
    amount_tzs = models.PositiveIntegerField()
    method = models.CharField(max_length=10, choices=PaymentMethodType.choices)
    reference = models.CharField(max_length=PAYMENT_ID_MAX_LENGTH, blank=True)
    received_at = models.DateTimeField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = "Payment event"
        verbose_name_plural = "Payment events"
        ordering = ['received_at', 'id']

    def __str__(self):
        return f"{self.order.order_id} | +{self.amount_tzs} TZS | {self.method}"

    def to_domain(self) -> PaymentEvent:
        return PaymentEvent(
            event_id=self.event_id,
            order_id=self.order.order_id,
            amount_tzs=self.amount_tzs,
            method=self.method,
            reference=self.reference,
            received_at=self.received_at,
        )


class PaymentEvidenceRecord(models.Model):
    """Customer-supplied proof (transaction SMS or screenshot) awaiting admin review."""

    order = models.ForeignKey(OrderRecord, on_delete=models.CASCADE, related_name='evidence')
    customer_id = models.CharField(max_length=32)
    text = models.TextField(blank=True)
    media_id = models.CharField(max_length=128, blank=True)
    caption = models.TextField(blank=True)
    received_at = models.DateTimeField()

    class Meta:
        verbose_name = "Payment evidence"
        verbose_name_plural = "Payment evidence"
        ordering = ['received_at', 'id']

    def __str__(self):
        return f"{self.order.order_id} | {'image' if self.media_id else 'text'}"

    def to_domain(self) -> PaymentEvidence:
        return PaymentEvidence(
            order_id=self.order.order_id,
            customer_id=self.customer_id,
            text=self.text,
            media_id=self.media_id,
            caption=self.caption,
            received_at=self.received_at,
        )
