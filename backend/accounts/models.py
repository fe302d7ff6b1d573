from django.contrib.auth.models import AbstractUser
from django.db import models


class User(AbstractUser):
    """
    Platform user. Registration and profile management live outside the billing core;
    billing only needs the identity, contact email and the account type.
    """

    class UserType(models.TextChoices):
        PLAYER = "player", "Player"
        COACH = "coach", "Coach"
        NJCAA_COACH = "njcaa_coach", "NJCAA Coach"
        ADMIN = "admin", "Admin"

    email = models.EmailField(unique=True)
    is_active = models.BooleanField(default=True)
    user_type = models.CharField(
        max_length=20,
        choices=UserType.choices,
        default=UserType.PLAYER,
        help_text="Account type; decides which plans a user may subscribe to",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    USERNAME_FIELD = 'username'
    REQUIRED_FIELDS = ['email']

    class Meta:
        db_table = 'user'
        verbose_name = 'User'
        verbose_name_plural = 'Users'

    def __str__(self):
        return self.username

    @property
    def is_billing_admin(self) -> bool:
        return bool(self.is_staff or self.user_type == self.UserType.ADMIN)
