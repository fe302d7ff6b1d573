from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from .models import User


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    """
    User admin configuration
    """
    list_display = (
        'username', 'email', 'first_name', 'last_name',
        'user_type', 'is_active', 'created_at'
    )
    list_filter = ('is_active', 'is_staff', 'is_superuser', 'user_type', 'created_at')
    search_fields = ('username', 'email', 'first_name', 'last_name')
    ordering = ('-created_at',)
    readonly_fields = ('created_at', 'updated_at')

    fieldsets = BaseUserAdmin.fieldsets + (
        ('Platform', {'fields': ('user_type',)}),
        ('Timestamps', {'fields': ('created_at', 'updated_at')}),
    )

    add_fieldsets = BaseUserAdmin.add_fieldsets + (
        ('Platform', {'fields': ('email', 'user_type')}),
    )
