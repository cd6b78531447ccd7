from django.contrib import admin
from .models import AuditLogEntry


@admin.register(AuditLogEntry)
class AuditLogEntryAdmin(admin.ModelAdmin):
    list_display = ("created_at", "action", "resource", "resource_id", "actor", "retention_tag", "ip")
    list_filter = ("retention_tag", "action", "resource")
    search_fields = ("resource_id", "actor__email", "action")
    readonly_fields = [f.name for f in AuditLogEntry._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False
