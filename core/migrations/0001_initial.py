from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='DeliveryFailure',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('channel', models.CharField(choices=[('whatsapp', 'WhatsApp'), ('psp', 'Payment provider')], max_length=20, verbose_name='Channel')),
                ('recipient', models.CharField(blank=True, max_length=32, verbose_name='Recipient')),
                ('reference', models.CharField(blank=True, help_text='Order code or inbound message id', max_length=64, verbose_name='Reference')),
                ('error', models.TextField(verbose_name='Error')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
            ],
            options={
                'verbose_name': 'Delivery failure',
                'verbose_name_plural': 'Delivery failures',
                'ordering': ['-created_at', '-id'],
            },
        ),
    ]
