from django.contrib.auth.models import AbstractUser
from django.db import models


class User(AbstractUser):
    """
    User model linked to the external identity provider.
    """
    email = models.EmailField(unique=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    identity_provider_id = models.CharField(
        max_length=255,
        unique=True,
        blank=True,
        null=True,
        help_text="Subject identifier issued by the identity provider",
    )
    # Mining payouts
    payout_address = models.CharField(
        max_length=128,
        blank=True,
        null=True,
        help_text="Address that receives mining payouts",
    )
    stripe_customer_id = models.CharField(
        max_length=255,
        blank=True,
        null=True,
        help_text="Stripe customer created during card checkout",
    )
    USERNAME_FIELD = 'username'
    REQUIRED_FIELDS = ['email']

    class Meta:
        db_table = 'user'
        verbose_name = 'User'
        verbose_name_plural = 'Users'

    def __str__(self):
        return self.username
