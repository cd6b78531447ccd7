from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from .models import CustomUser, MentorProfile, PricingModel
from .forms import CustomUserCreationForm, CustomUserChangeForm


class UserAdmin(BaseUserAdmin):
    add_form = CustomUserCreationForm
    form = CustomUserChangeForm
    model = CustomUser
    list_display = ("email", "is_staff", "is_superuser", "date_joined")
    list_filter = ("is_staff", "is_superuser")
    search_fields = ("email",)
    ordering = ("email",)
    fieldsets = (
        (None, {"fields": ("email", "password")}),
        ("Permissions", {"fields": ("is_active", "is_staff", "is_superuser", "groups", "user_permissions")}),
        ("Important dates", {"fields": ("last_login",)}),
    )
    add_fieldsets = (
        (None, {"classes": ("wide",), "fields": ("email", "password1", "password2")}),
    )


admin.site.register(CustomUser, UserAdmin)


@admin.register(MentorProfile)
class MentorProfileAdmin(admin.ModelAdmin):
    list_display = ("user", "first_name", "last_name", "auto_payout", "payout_method")
    list_filter = ("auto_payout", "payout_method")
    search_fields = ("user__email", "first_name", "last_name")


@admin.register(PricingModel)
class PricingModelAdmin(admin.ModelAdmin):
    list_display = ("mentor", "type", "price", "duration", "is_active")
    list_filter = ("type", "is_active")
    search_fields = ("mentor__email",)
