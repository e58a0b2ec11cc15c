from django.db import models
from django.contrib.auth.models import AbstractUser


class CustomUser(AbstractUser):

    def __str__(self):
        return self.username


class Organization(models.Model):
    """A tenant. Owns at most one subscription and its billing history."""
    name = models.CharField(max_length=100)
    members = models.ManyToManyField('CustomUser', through='Membership', related_name='organizations')
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return self.name


class Membership(models.Model):
    class Role(models.TextChoices):
        OWNER = 'OWNER', 'Owner'
        ADMIN = 'ADMIN', 'Admin'
        MANAGER = 'MANAGER', 'Manager'
        MEMBER = 'MEMBER', 'Member'

    # Roles allowed to change the organization's subscription or payment method.
    BILLING_ADMIN_ROLES = (Role.OWNER, Role.ADMIN)

    user = models.ForeignKey('CustomUser', on_delete=models.CASCADE)
    organization = models.ForeignKey('Organization', on_delete=models.CASCADE)
    role = models.CharField(max_length=10, choices=Role.choices, default=Role.MEMBER)

    class Meta:
        unique_together = ('user', 'organization')

    @property
    def is_billing_admin(self):
        return self.role in self.BILLING_ADMIN_ROLES

    def __str__(self):
        return f'{self.user.username} in {self.organization.name} ({self.get_role_display()})'
