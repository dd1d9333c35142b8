from django.contrib import admin

from .models import Member


@admin.register(Member)
class MemberAdmin(admin.ModelAdmin):
    list_display = ("name", "email", "id_number", "phone", "is_active", "created_at")
    list_filter = ("is_active", "country")
    search_fields = ("name", "email", "id_number")
    readonly_fields = ("is_active", "created_at", "updated_at")
