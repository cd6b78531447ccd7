from django.contrib.auth.models import AbstractBaseUser, PermissionsMixin
from django.db import models
from django.utils import timezone
from .managers import CustomUserManager


class CustomUser(AbstractBaseUser, PermissionsMixin):
    email = models.EmailField("email address", unique=True)
    is_staff = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True)
    date_joined = models.DateTimeField(default=timezone.now)

    USERNAME_FIELD = "email"
    REQUIRED_FIELDS = []

    objects = CustomUserManager()

    class Meta:
        verbose_name = "User"
        verbose_name_plural = "Users"

    def save(self, *args, **kwargs):
        """Override save to ensure email is always stored in lowercase"""
        if self.email:
            self.email = self.email.lower().strip()
        super().save(*args, **kwargs)

    def __str__(self):
        return self.email


class MentorProfile(models.Model):
    """Profile for mentors. Only payout preferences are read by billing."""

    PAYOUT_METHODS = [
        ("bank_transfer", "Bank Transfer"),
        ("platform_credit", "Platform Credit"),
    ]

    user = models.OneToOneField("accounts.CustomUser", on_delete=models.CASCADE, related_name="mentor_profile")
    first_name = models.CharField(max_length=150)
    last_name = models.CharField(max_length=150)
    bio = models.TextField(blank=True)
    auto_payout = models.BooleanField(
        default=False,
        help_text="Pay out each session's earnings as soon as its transaction completes",
    )
    payout_method = models.CharField(max_length=30, choices=PAYOUT_METHODS, default="bank_transfer")
    stripe_account_id = models.CharField(max_length=255, blank=True, help_text="Connected account that receives transfers")

    class Meta:
        verbose_name = "Mentor Profile"
        verbose_name_plural = "Mentor Profiles"

    def __str__(self):
        return f"{self.first_name} {self.last_name} ({self.user.email})"


class PricingModel(models.Model):
    """
    Mentor-configured billing shape. Edited by the mentor profile pages;
    billing only reads it.
    """

    ONE_TIME = "ONE_TIME"
    HOURLY = "HOURLY"
    SUBSCRIPTION = "SUBSCRIPTION"
    TYPE_CHOICES = [
        (ONE_TIME, "One-time session"),
        (HOURLY, "Hourly"),
        (SUBSCRIPTION, "Monthly subscription"),
    ]

    mentor = models.ForeignKey("accounts.CustomUser", on_delete=models.CASCADE, related_name="pricing_models")
    type = models.CharField(max_length=20, choices=TYPE_CHOICES)
    price = models.DecimalField(max_digits=12, decimal_places=2)
    duration = models.PositiveIntegerField(blank=True, null=True, help_text="Session length in minutes (one-time only)")
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["mentor_id", "type"]
        indexes = [
            models.Index(fields=["mentor", "type", "is_active"], name="pricing_mentor_type_idx"),
        ]

    def __str__(self):
        return f"{self.get_type_display()} {self.price} ({self.mentor.email})"
