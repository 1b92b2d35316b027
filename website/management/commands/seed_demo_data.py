from decimal import Decimal

from django.core.management.base import BaseCommand

from website.models import Project, SiteSetting

SAMPLE_PROJECTS = [
    {
        'title': 'Clean Water Initiative',
        'description': 'Providing clean water access to rural communities through well construction and '
                       'water purification systems. This project aims to serve over 500 families.',
        'target_amount': Decimal('50000'),
        'image_url': 'https://images.unsplash.com/photo-1541919329513-35f7af297129?w=800',
        'category': 'Health & Environment',
    },
    {
        'title': 'Education for All',
        'description': 'Building classrooms and providing educational materials for underprivileged children. '
                       'Supporting 200+ students with books, uniforms, and learning resources.',
        'target_amount': Decimal('75000'),
        'image_url': 'https://images.unsplash.com/photo-1497486751825-1233686d5d80?w=800',
        'category': 'Education',
    },
    {
        'title': 'Community Food Bank',
        'description': 'Establishing a sustainable food distribution center to combat hunger in urban areas. '
                       'Serving 1000+ families monthly with nutritious meals.',
        'target_amount': Decimal('30000'),
        'image_url': 'https://images.unsplash.com/photo-1593113598332-cd288d649433?w=800',
        'category': 'Food Security',
    },
    {
        'title': 'Healthcare Mobile Clinic',
        'description': 'Mobile healthcare services for remote areas lacking medical facilities. '
                       'Providing basic healthcare, vaccinations, and health education.',
        'target_amount': Decimal('100000'),
        'image_url': 'https://images.unsplash.com/photo-1559757148-5c350d0d3c56?w=800',
        'category': 'Healthcare',
    },
    {
        'title': 'Youth Skills Training',
        'description': 'Vocational training program for unemployed youth, teaching digital skills, '
                       'entrepreneurship, and technical trades to create employment opportunities.',
        'target_amount': Decimal('40000'),
        'image_url': 'https://images.unsplash.com/photo-1522202176988-66273c2fd55f?w=800',
        'category': 'Skills Development',
    },
]


class Command(BaseCommand):
    help = "Install the default site settings and, on an empty database, the sample projects."

    def add_arguments(self, parser):
        parser.add_argument('--force', action='store_true', help='Add sample projects even if projects exist.')

    def handle(self, *args, **options):
        created = SiteSetting.install_defaults()
        self.stdout.write(f'{created} setting(s) installed.')
        if Project.objects.exists() and not options['force']:
            self.stdout.write('Projects already present, sample projects skipped.')
            return
        for data in SAMPLE_PROJECTS:
            Project.objects.get_or_create(title=data['title'], defaults=data)
        self.stdout.write(self.style.SUCCESS(f'{len(SAMPLE_PROJECTS)} sample project(s) ready.'))
