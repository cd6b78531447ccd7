from django.contrib import admin
from .models import Session


class SessionAdmin(admin.ModelAdmin):
    list_display = ('start_datetime', 'end_datetime', 'mentor', 'mentee', 'pricing_type', 'agreed_price', 'status')
    list_filter = ('pricing_type', 'status', 'start_datetime')
    search_fields = ('mentor__email', 'mentee__email', 'note')

admin.site.register(Session, SessionAdmin)
