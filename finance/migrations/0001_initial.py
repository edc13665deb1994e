import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='OrderSequence',
            fields=[
                ('year', models.PositiveIntegerField(primary_key=True, serialize=False)),
                ('last_value', models.PositiveIntegerField(default=0)),
            ],
        ),
        migrations.CreateModel(
            name='OrderRecord',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('order_id', models.CharField(max_length=32, unique=True, verbose_name='Order code')),
                ('customer_id', models.CharField(db_index=True, max_length=32, verbose_name='WhatsApp id')),
                ('customer_name', models.CharField(blank=True, max_length=120)),
                ('contact_phone', models.CharField(blank=True, max_length=32)),
                ('language', models.CharField(default='sw', max_length=5)),
                ('total_tzs', models.PositiveIntegerField(verbose_name='Total (TZS)')),
                ('fulfillment', models.CharField(choices=[('pickup', 'Pickup'), ('delivery', 'Delivery')], max_length=10)),
                ('delivery_quote', models.JSONField(blank=True, null=True)),
                ('created_at', models.DateTimeField()),
            ],
            options={
                'verbose_name': 'Order',
                'verbose_name_plural': 'Orders',
                'ordering': ['-created_at', '-id'],
            },
        ),
        migrations.CreateModel(
            name='OrderItemRecord',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('position', models.PositiveSmallIntegerField(default=0)),
                ('product_id', models.CharField(max_length=64)),
                ('title', models.CharField(max_length=120)),
                ('unit_price_tzs', models.PositiveIntegerField()),
                ('quantity', models.PositiveIntegerField()),
                ('order', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='items', to='finance.orderrecord')),
            ],
            options={
                'ordering': ['order', 'position'],
            },
        ),
        migrations.CreateModel(
            name='PaymentEventRecord',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('event_id', models.CharField(max_length=100, unique=True)),
                ('amount_tzs', models.PositiveIntegerField()),
                ('method', models.CharField(choices=[('manual', 'Manual reconciliation'), ('ussd', 'USSD push'), ('checkout', 'Checkout link')], max_length=10)),
                ('reference', models.CharField(blank=True, max_length=100)),
                ('received_at', models.DateTimeField()),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('order', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='payment_events', to='finance.orderrecord')),
            ],
            options={
                'verbose_name': 'Payment event',
                'verbose_name_plural': 'Payment events',
                'ordering': ['received_at', 'id'],
            },
        ),
        migrations.CreateModel(
            name='PaymentEvidenceRecord',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('customer_id', models.CharField(max_length=32)),
                ('text', models.TextField(blank=True)),
                ('media_id', models.CharField(blank=True, max_length=128)),
                ('caption', models.TextField(blank=True)),
                ('received_at', models.DateTimeField()),
                ('order', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='evidence', to='finance.orderrecord')),
            ],
            options={
                'verbose_name': 'Payment evidence',
                'verbose_name_plural': 'Payment evidence',
                'ordering': ['received_at', 'id'],
            },
        ),
    ]
