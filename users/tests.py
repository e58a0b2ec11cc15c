import json

from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser
from django.db import IntegrityError
from django.http import JsonResponse
from django.test import RequestFactory, TestCase

from .decorators import membership_required
from .models import Membership, Organization

User = get_user_model()


@membership_required
def whoami(request):
    return JsonResponse({
        'organization': request.membership.organization.name,
        'role': request.membership.role,
    })


class MembershipModelTest(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username='testuser', password='testpassword')
        self.organization = Organization.objects.create(name='Acme Builders')

    def test_billing_admin_roles(self):
        membership = Membership.objects.create(user=self.user, organization=self.organization, role=Membership.Role.OWNER)
        self.assertTrue(membership.is_billing_admin)
        membership.role = Membership.Role.ADMIN
        self.assertTrue(membership.is_billing_admin)
        membership.role = Membership.Role.MANAGER
        self.assertFalse(membership.is_billing_admin)
        membership.role = Membership.Role.MEMBER
        self.assertFalse(membership.is_billing_admin)

    def test_default_role_is_member(self):
        membership = Membership.objects.create(user=self.user, organization=self.organization)
        self.assertEqual(membership.role, Membership.Role.MEMBER)
        self.assertIn(self.user, self.organization.members.all())
        self.assertIn(self.organization, self.user.organizations.all())

    def test_one_membership_per_organization(self):
        Membership.objects.create(user=self.user, organization=self.organization)
        with self.assertRaises(IntegrityError):
            Membership.objects.create(user=self.user, organization=self.organization, role=Membership.Role.ADMIN)


class MembershipRequiredTest(TestCase):
    def setUp(self):
        self.factory = RequestFactory()
        self.user = User.objects.create_user(username='testuser', password='testpassword')

    def get(self, user):
        request = self.factory.get('/whoami/')
        request.user = user
        return whoami(request)

    def test_anonymous_user_is_unauthorized(self):
        response = self.get(AnonymousUser())
        self.assertEqual(response.status_code, 401)
        self.assertEqual(json.loads(response.content)['error'], 'unauthorized')

    def test_user_without_organization_is_forbidden(self):
        response = self.get(self.user)
        self.assertEqual(response.status_code, 403)
        self.assertEqual(json.loads(response.content)['error'], 'forbidden')

    def test_membership_is_attached(self):
        organization = Organization.objects.create(name='Acme Builders')
        Membership.objects.create(user=self.user, organization=organization, role=Membership.Role.OWNER)
        response = self.get(self.user)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(json.loads(response.content), {'organization': 'Acme Builders', 'role': 'OWNER'})

    def test_first_membership_wins(self):
        first = Organization.objects.create(name='First')
        second = Organization.objects.create(name='Second')
        Membership.objects.create(user=self.user, organization=first, role=Membership.Role.MEMBER)
        Membership.objects.create(user=self.user, organization=second, role=Membership.Role.ADMIN)
        self.assertEqual(json.loads(self.get(self.user).content)['organization'], 'First')
