import json
import shutil
import tempfile
from decimal import Decimal
from io import BytesIO, StringIO

from PIL import Image
from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.core.files.uploadedfile import SimpleUploadedFile
from django.core.management import call_command
from django.test import TestCase, Client, override_settings
from django.urls import reverse

from payments.models import Donation
from website.models import Project, SiteSetting


def make_project(**kwargs):
    data = {
        'title': 'Clean Water Initiative',
        'description': 'Wells for rural communities.',
        'target_amount': Decimal('50000'),
        'category': 'Health & Environment',
    }
    data.update(kwargs)
    return Project.objects.create(**data)


def image_bytes(size=(2000, 1000), fmt='PNG', mode='RGB'):
    buffer = BytesIO()
    Image.new(mode, size, 'red').save(buffer, fmt)
    return buffer.getvalue()


class ProjectModelTests(TestCase):
    def test_progress_percent_is_capped(self):
        project = make_project(target_amount=Decimal('1000'), current_amount=Decimal('250'))
        self.assertEqual(project.progress_percent, 25.0)
        project.current_amount = Decimal('5000')
        self.assertEqual(project.progress_percent, 100)

    def test_target_amount_must_be_positive(self):
        project = Project(title='X', description='Y', target_amount=Decimal('0'), category='Z')
        with self.assertRaises(ValidationError):
            project.full_clean()

    def test_recompute_total_matches_completed_donations(self):
        project = make_project()
        Donation.objects.create(project=project, amount=Decimal('300'), status=Donation.STATUS_COMPLETED)
        Donation.objects.create(project=project, amount=Decimal('200'), status=Donation.STATUS_FAILED)
        self.assertEqual(project.recompute_total(), Decimal('300'))
        project.refresh_from_db()
        self.assertEqual(project.current_amount, Decimal('300'))

    def test_recompute_total_without_completed_donations(self):
        project = make_project(current_amount=Decimal('75'))
        Donation.objects.create(project=project, amount=Decimal('40'), status=Donation.STATUS_PENDING)
        self.assertEqual(project.recompute_total(), Decimal('0'))
        self.assertEqual(Project.objects.get(pk=project.pk).current_amount, Decimal('0'))


class ProjectImageTests(TestCase):
    def setUp(self):
        self.media = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.media, ignore_errors=True)

    def test_uploaded_cover_is_resized_and_reencoded(self):
        with override_settings(MEDIA_ROOT=self.media, UPLOAD_MAX_WIDTH=800):
            project = make_project(image=SimpleUploadedFile('cover.png', image_bytes(), content_type='image/png'))
            self.assertTrue(project.image.name.endswith('.jpg'))
            with Image.open(project.image.path) as im:
                self.assertEqual(im.width, 800)
                self.assertEqual(im.format, 'JPEG')
            self.assertEqual(project.cover_url, project.image.url)

    def test_transparent_png_stays_png(self):
        with override_settings(MEDIA_ROOT=self.media):
            data = image_bytes(size=(100, 50), mode='RGBA')
            project = make_project(image=SimpleUploadedFile('logo.png', data, content_type='image/png'))
            self.assertTrue(project.image.name.endswith('.png'))




class SiteSettingTests(TestCase):
    def test_defaults_installed(self):
        self.assertEqual(SiteSetting.get('platform_name'), 'DonateAnon')
        self.assertEqual(SiteSetting.get('maximum_donation'), 1000000)
        self.assertEqual(SiteSetting.get('minimum_donation'), 1)
        self.assertIs(SiteSetting.get('enable_notifications'), True)
        self.assertIs(SiteSetting.get('auto_approve_projects'), False)
        self.assertEqual(SiteSetting.get('missing', 'fallback'), 'fallback')

    def test_get_reads_from_given_database(self):
        with self.assertNumQueries(1, using='default'):
            self.assertEqual(SiteSetting.get('platform_name', using='default'), 'DonateAnon')

    def test_reads_are_not_cached(self):
        self.assertEqual(SiteSetting.get('minimum_donation'), 1)
        SiteSetting.objects.filter(key='minimum_donation').update(value='10')
        self.assertEqual(SiteSetting.get('minimum_donation'), 10)

    def test_reset_defaults(self):
        SiteSetting.objects.filter(key='platform_name').update(value='Other')
        SiteSetting.objects.create(key='extra', value='1', type=SiteSetting.TYPE_NUMBER)
        self.assertEqual(SiteSetting.reset_defaults(), len(SiteSetting.DEFAULTS))
        self.assertEqual(SiteSetting.get('platform_name'), 'DonateAnon')
        self.assertFalse(SiteSetting.objects.filter(key='extra').exists())

    def test_to_storage(self):
        self.assertEqual(SiteSetting.to_storage(True), 'true')
        self.assertEqual(SiteSetting.to_storage(False), 'false')
        self.assertEqual(SiteSetting.to_storage(2.5), '2.5')


class StaffClientMixin:
    def staff_client(self):
        user = get_user_model().objects.create_user('admin', 'admin@example.com', 'secret-pw', is_staff=True)
        client = Client()
        client.force_login(user)
        return client


class ProjectApiTests(StaffClientMixin, TestCase):
    def setUp(self):
        self.water = make_project()
        self.school = make_project(title='Education for All', category='Education', status=Project.STATUS_PAUSED)

    def post_json(self, client, url, data):
        return client.post(url, data=json.dumps(data), content_type='application/json')

    def test_list_defaults_to_active(self):
        resp = self.client.get(reverse('website:projects'))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual([p['id'] for p in resp.json()], [self.water.pk])
        resp = self.client.get(reverse('website:projects'), {'status': 'all'})
        self.assertEqual(len(resp.json()), 2)
        resp = self.client.get(reverse('website:projects'), {'status': 'all', 'category': 'Education'})
        self.assertEqual([p['id'] for p in resp.json()], [self.school.pk])

    def test_list_reports_totals_and_repairs_drift(self):
        Donation.objects.create(project=self.water, amount=Decimal('300'), status=Donation.STATUS_COMPLETED)
        Donation.objects.create(project=self.water, amount=Decimal('80'), status=Donation.STATUS_PENDING)
        row = self.client.get(reverse('website:projects')).json()[0]
        self.assertEqual(row['current_amount'], 300.0)
        self.assertEqual(row['donation_count'], 1)
        self.water.refresh_from_db()
        self.assertEqual(self.water.current_amount, Decimal('300'))

    def test_list_rejects_negative_limit(self):
        resp = self.client.get(reverse('website:projects'), {'limit': -1})
        self.assertEqual(resp.status_code, 400)
        self.assertIn('negative', resp.json()['error'])
        self.assertEqual(len(self.client.get(reverse('website:projects'), {'limit': 0}).json()), 1)

    def test_create_requires_staff(self):
        resp = self.post_json(self.client, reverse('website:projects'), {'title': 'x'})
        self.assertEqual(resp.status_code, 401)

    def test_create_project(self):
        client = self.staff_client()
        resp = self.post_json(client, reverse('website:projects'), {
            'title': 'Community Food Bank',
            'description': 'Food distribution center.',
            'target_amount': 30000,
            'category': 'Food Security',
            'image_url': '/media/projects/uploads/project_1.jpg',
        })
        self.assertEqual(resp.status_code, 201)
        body = resp.json()
        self.assertEqual(body['status'], 'active')
        self.assertEqual(body['current_amount'], 0.0)
        self.assertTrue(Project.objects.filter(title='Community Food Bank').exists())

    def test_create_validation(self):
        client = self.staff_client()
        resp = self.post_json(client, reverse('website:projects'), {'title': 'Incomplete'})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()['error'], 'Missing required fields')
        resp = self.post_json(client, reverse('website:projects'), {
            'title': 'T', 'description': 'D', 'target_amount': 0, 'category': 'C',
        })
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()['error'], 'Target amount must be greater than 0')

    def test_detail_with_recent_donations(self):
        Donation.objects.create(project=self.water, amount=Decimal('150'), donor_name='Jane',
                                status=Donation.STATUS_COMPLETED)
        Donation.objects.create(project=self.water, amount=Decimal('50'), status=Donation.STATUS_COMPLETED)
        Donation.objects.create(project=self.water, amount=Decimal('999'), status=Donation.STATUS_FAILED)
        resp = self.client.get(reverse('website:project_detail', args=[self.water.pk]))
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body['current_amount'], 200.0)
        self.assertEqual(body['donation_count'], 2)
        self.assertEqual({d['donor_name'] for d in body['recent_donations']}, {'Jane', 'Anonymous'})
        self.assertNotIn('phone_number', body['recent_donations'][0])

    def test_detail_not_found(self):
        self.assertEqual(self.client.get(reverse('website:project_detail', args=[9999])).status_code, 404)

    def test_update_project(self):
        client = self.staff_client()
        url = reverse('website:project_detail', args=[self.water.pk])
        data = {'title': 'Clean Water 2', 'description': 'More wells.', 'target_amount': 60000,
                'category': 'Health', 'status': 'completed'}
        resp = client.put(url, data=json.dumps(data), content_type='application/json')
        self.assertEqual(resp.status_code, 200)
        self.water.refresh_from_db()
        self.assertEqual(self.water.title, 'Clean Water 2')
        self.assertEqual(self.water.status, Project.STATUS_COMPLETED)

        data['status'] = 'archived'
        resp = client.put(url, data=json.dumps(data), content_type='application/json')
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()['error'], 'Invalid status')

    def test_update_keeps_collected_amount(self):
        Donation.objects.create(project=self.water, amount=Decimal('300'), status=Donation.STATUS_COMPLETED)
        self.water.recompute_total()
        client = self.staff_client()
        data = {'title': 'T', 'description': 'D', 'target_amount': 100, 'category': 'C', 'current_amount': 0}
        client.put(reverse('website:project_detail', args=[self.water.pk]),
                   data=json.dumps(data), content_type='application/json')
        self.water.refresh_from_db()
        self.assertEqual(self.water.current_amount, Decimal('300'))

    def test_delete_project(self):
        client = self.staff_client()
        resp = client.delete(reverse('website:project_detail', args=[self.school.pk]))
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(Project.objects.filter(pk=self.school.pk).exists())
        self.assertEqual(self.client.delete(reverse('website:project_detail', args=[self.water.pk])).status_code, 401)


class StatsTests(TestCase):
    def test_stats(self):
        water = make_project()
        school = make_project(title='Education for All', category='Education')
        Donation.objects.create(project=water, amount=Decimal('300'), status=Donation.STATUS_COMPLETED)
        Donation.objects.create(project=school, amount=Decimal('100'), status=Donation.STATUS_COMPLETED)
        Donation.objects.create(project=school, amount=Decimal('900'), status=Donation.STATUS_EXPIRED)
        body = self.client.get(reverse('website:stats')).json()
        self.assertEqual(body['total_projects'], 2)
        self.assertEqual(body['active_projects'], 2)
        self.assertEqual(body['total_donations'], 2)
        self.assertEqual(body['total_amount_raised'], 400.0)
        self.assertEqual(len(body['recent_donations']), 2)
        self.assertEqual(body['donations_by_category'][0]['category'], 'Health & Environment')
        self.assertEqual(body['monthly_trends'][0]['donation_count'], 2)
        self.assertEqual(body['monthly_trends'][0]['total_amount'], 400.0)


class AdminLoginTests(TestCase):
    def setUp(self):
        get_user_model().objects.create_user('admin', 'admin@example.com', 'secret-pw', is_staff=True)
        get_user_model().objects.create_user('bob', 'bob@example.com', 'secret-pw')

    def login(self, username, password):
        return self.client.post(
            reverse('website:admin_login'),
            data=json.dumps({'username': username, 'password': password}),
            content_type='application/json',
        )

    def test_no_legacy_admin_redirect(self):
        self.assertEqual(self.client.get('/gestion/').status_code, 404)

    def test_login_success(self):
        resp = self.login('admin', 'secret-pw')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()['user']['username'], 'admin')
        self.assertEqual(self.client.get(reverse('website:admin_settings')).status_code, 200)

    def test_login_rejects_bad_credentials_and_non_staff(self):
        self.assertEqual(self.login('admin', 'wrong').status_code, 401)
        self.assertEqual(self.login('bob', 'secret-pw').status_code, 401)
        self.assertEqual(self.login('', '').status_code, 400)

    @override_settings(ADMIN_LOGIN_FAIL_THRESHOLD=3)
    def test_lockout_after_failures(self):
        for _ in range(3):
            self.assertEqual(self.login('admin', 'wrong').status_code, 401)
        resp = self.login('admin', 'secret-pw')
        self.assertEqual(resp.status_code, 429)
        self.assertGreater(resp.json()['retry_after'], 0)


class AdminSettingsTests(StaffClientMixin, TestCase):
    def test_requires_staff(self):
        self.assertEqual(self.client.get(reverse('website:admin_settings')).status_code, 401)

    def test_get_update_reset(self):
        client = self.staff_client()
        url = reverse('website:admin_settings')
        body = client.get(url).json()
        self.assertTrue(body['success'])
        self.assertEqual(body['settings']['maximum_donation'], 1000000)

        resp = client.put(url, data=json.dumps({'settings': {
            'platform_name': 'GiveKE', 'enable_notifications': False, 'minimum_donation': 10, 'unknown': 'x',
        }}), content_type='application/json')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(SiteSetting.get('platform_name'), 'GiveKE')
        self.assertIs(SiteSetting.get('enable_notifications'), False)
        self.assertEqual(SiteSetting.get('minimum_donation'), 10)
        self.assertFalse(SiteSetting.objects.filter(key='unknown').exists())

        self.assertEqual(client.post(url).status_code, 200)
        self.assertEqual(SiteSetting.get('platform_name'), 'DonateAnon')

    def test_invalid_payload(self):
        client = self.staff_client()
        resp = client.put(reverse('website:admin_settings'), data=json.dumps({'settings': 'x'}),
                          content_type='application/json')
        self.assertEqual(resp.status_code, 400)


class UploadImageTests(StaffClientMixin, TestCase):
    def setUp(self):
        media = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, media, ignore_errors=True)
        override = override_settings(MEDIA_ROOT=media, UPLOAD_MAX_WIDTH=1600)
        override.enable()
        self.addCleanup(override.disable)
        self.client = self.staff_client()
        self.url = reverse('website:upload_image')

    def test_upload_and_delete(self):
        upload = SimpleUploadedFile('photo.png', image_bytes(), content_type='image/png')
        resp = self.client.post(self.url, {'image': upload})
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body['success'])
        self.assertTrue(body['imageUrl'].startswith('/media/projects/uploads/project_'))
        self.assertEqual(body['type'], 'image/jpeg')

        resp = self.client.delete(f"{self.url}?filename={body['filename']}")
        self.assertEqual(resp.status_code, 200)
        resp = self.client.delete(f"{self.url}?filename={body['filename']}")
        self.assertEqual(resp.status_code, 404)

    def test_rejects_wrong_type_and_missing_file(self):
        upload = SimpleUploadedFile('notes.txt', b'hello', content_type='text/plain')
        self.assertEqual(self.client.post(self.url, {'image': upload}).status_code, 400)
        self.assertEqual(self.client.post(self.url, {}).status_code, 400)

    @override_settings(UPLOAD_MAX_BYTES=10)
    def test_rejects_large_file(self):
        upload = SimpleUploadedFile('photo.png', image_bytes(size=(50, 50)), content_type='image/png')
        resp = self.client.post(self.url, {'image': upload})
        self.assertEqual(resp.status_code, 400)
        self.assertIn('too large', resp.json()['error'])

    def test_rejects_corrupt_image(self):
        upload = SimpleUploadedFile('photo.png', b'not an image', content_type='image/png')
        self.assertEqual(self.client.post(self.url, {'image': upload}).status_code, 400)

    def test_delete_rejects_path_traversal(self):
        for name in ('../settings.py', 'a/b.jpg', 'a\\b.jpg'):
            with self.subTest(name=name):
                resp = self.client.delete(self.url, QUERY_STRING=f'filename={name}')
                self.assertEqual(resp.status_code, 400)


class DashboardTests(StaffClientMixin, TestCase):
    def test_dashboard_summary(self):
        project = make_project()
        Donation.objects.create(project=project, amount=Decimal('300'), status=Donation.STATUS_COMPLETED)
        project.recompute_total()
        body = self.staff_client().get(reverse('website:admin_dashboard')).json()
        self.assertEqual(body['projects']['active'], 1)
        self.assertEqual(body['donations']['completed'], 1)
        self.assertEqual(body['total_raised'], 300.0)
        self.assertTrue(body['totals_in_sync'])

    def test_dashboard_requires_staff(self):
        self.assertEqual(self.client.get(reverse('website:admin_dashboard')).status_code, 401)


class ManagementCommandTests(TestCase):
    def test_seed_demo_data(self):
        SiteSetting.objects.all().delete()
        out = StringIO()
        call_command('seed_demo_data', stdout=out)
        self.assertEqual(Project.objects.count(), 5)
        self.assertEqual(SiteSetting.objects.count(), len(SiteSetting.DEFAULTS))
        call_command('seed_demo_data', stdout=out)
        self.assertEqual(Project.objects.count(), 5)

    def test_recompute_totals(self):
        project = make_project(current_amount=Decimal('42'))
        Donation.objects.create(project=project, amount=Decimal('300'), status=Donation.STATUS_COMPLETED)
        out = StringIO()
        call_command('recompute_totals', stdout=out)
        project.refresh_from_db()
        self.assertEqual(project.current_amount, Decimal('300'))
        self.assertIn('1 project total(s) corrected', out.getvalue())


__all__ = [
    'ProjectModelTests',
    'ProjectImageTests',
    'SiteSettingTests',
    'ProjectApiTests',
    'StatsTests',
    'AdminLoginTests',
    'AdminSettingsTests',
    'UploadImageTests',
    'DashboardTests',
    'ManagementCommandTests',
]
