from django.db import migrations

# Frozen copy of SiteSetting.DEFAULTS at the time of this migration
DEFAULTS = [
    ('platform_name', 'DonateAnon', 'string', 'Platform name displayed across the site'),
    ('platform_description', 'Anonymous donation platform for social projects', 'string',
     'Platform description for meta tags and about sections'),
    ('contact_email', 'admin@donateanon.com', 'string', 'Contact email displayed on the site'),
    ('mpesa_business_code', '174379', 'string', 'M-Pesa business shortcode shown to donors'),
    ('mpesa_environment', 'sandbox', 'string', 'M-Pesa environment (sandbox/production)'),
    ('enable_notifications', 'true', 'boolean', 'Enable email notifications for events'),
    ('auto_approve_projects', 'false', 'boolean', 'Automatically approve new project submissions'),
    ('minimum_donation', '1', 'number', 'Minimum donation amount in KES'),
    ('maximum_donation', '1000000', 'number', 'Maximum donation amount in KES'),
    ('featured_projects_limit', '3', 'number', 'Number of featured projects to display on homepage'),
]


def create_settings(apps, schema_editor):
    SiteSetting = apps.get_model('website', 'SiteSetting')
    for key, value, type_, description in DEFAULTS:
        SiteSetting.objects.get_or_create(
            key=key, defaults={'value': value, 'type': type_, 'description': description}
        )


def remove_settings(apps, schema_editor):
    SiteSetting = apps.get_model('website', 'SiteSetting')
    SiteSetting.objects.filter(key__in=[row[0] for row in DEFAULTS]).delete()


class Migration(migrations.Migration):
    dependencies = [
        ('website', '0001_initial'),
    ]

    operations = [
        migrations.RunPython(create_settings, remove_settings),
    ]
