from django.contrib.auth.models import AbstractUser
from django.db import models


class User(AbstractUser):
    """Platform account; clients and professionals share the same model."""

    display_name = models.CharField(max_length=120, blank=True)
    phone_number = models.CharField(max_length=30, blank=True)
    timezone = models.CharField(max_length=64, default="UTC")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def label(self) -> str:
        return self.display_name or self.full_name or self.email or self.username
