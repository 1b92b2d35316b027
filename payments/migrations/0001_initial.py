from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ('website', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='Donation',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('donor_name', models.CharField(blank=True, max_length=120)),
                ('status', models.CharField(
                    choices=[
                        ('pending', 'Pending'), ('processing', 'Processing'), ('completed', 'Completed'),
                        ('failed', 'Failed'), ('cancelled', 'Cancelled'), ('expired', 'Expired'),
                    ],
                    db_index=True, default='pending', max_length=12,
                )),
                ('merchant_request_id', models.CharField(blank=True, max_length=64)),
                ('checkout_request_id', models.CharField(blank=True, max_length=64, null=True, unique=True)),
                ('receipt_number', models.CharField(blank=True, max_length=64)),
                ('failure_reason', models.CharField(blank=True, max_length=255)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('settled_at', models.DateTimeField(blank=True, null=True)),
                ('project', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE, related_name='donations', to='website.project',
                )),
            ],
            options={
                'verbose_name': 'Donation',
                'verbose_name_plural': 'Donations',
                'ordering': ('-created_at',),
            },
        ),
        migrations.CreateModel(
            name='ProviderCallback',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('kind', models.CharField(default='result', max_length=10)),
                ('checkout_request_id', models.CharField(blank=True, db_index=True, max_length=64)),
                ('merchant_request_id', models.CharField(blank=True, max_length=64)),
                ('result_code', models.IntegerField(blank=True, null=True)),
                ('result_desc', models.CharField(blank=True, max_length=255)),
                ('payload', models.JSONField(blank=True, default=dict)),
                ('signature_valid', models.BooleanField(default=False)),
                ('outcome', models.CharField(
                    blank=True,
                    choices=[
                        ('applied', 'Applied'), ('duplicate', 'Duplicate'), ('unknown', 'Unknown donation'),
                        ('rejected', 'Signature rejected'), ('invalid', 'Invalid payload'),
                        ('error', 'Processing error'),
                    ],
                    max_length=10,
                )),
                ('received_at', models.DateTimeField(auto_now_add=True)),
            ],
            options={
                'verbose_name': 'Provider callback',
                'verbose_name_plural': 'Provider callbacks',
                'ordering': ('-received_at',),
            },
        ),
        migrations.CreateModel(
            name='ReconciliationTask',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('state', models.CharField(
                    choices=[('queued', 'Queued'), ('resolved', 'Resolved')],
                    db_index=True, default='queued', max_length=10,
                )),
                ('deadline', models.DateTimeField()),
                ('next_check_at', models.DateTimeField(db_index=True)),
                ('attempts', models.PositiveIntegerField(default=0)),
                ('outcome', models.CharField(blank=True, max_length=12)),
                ('resolved_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('donation', models.OneToOneField(
                    on_delete=django.db.models.deletion.CASCADE, related_name='reconciliation',
                    to='payments.donation',
                )),
            ],
            options={
                'verbose_name': 'Reconciliation task',
                'verbose_name_plural': 'Reconciliation tasks',
                'ordering': ('next_check_at',),
            },
        ),
    ]
