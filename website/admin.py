from django.contrib import admin
from django.utils import timezone
from django.utils.html import format_html

from .models import Project, SiteSetting


class RecentDateFilter(admin.SimpleListFilter):
    title = 'Period'
    parameter_name = 'period'
    date_field = 'created_at'

    def lookups(self, request, model_admin):
        return [
            ('1d', 'Last 24h'),
            ('7d', 'Last 7 days'),
            ('30d', 'Last 30 days'),
        ]

    def queryset(self, request, queryset):
        days = {'1d': 1, '7d': 7, '30d': 30}.get(self.value())
        if not days:
            return queryset
        since = timezone.now() - timezone.timedelta(days=days)
        return queryset.filter(**{f'{self.date_field}__gte': since})


@admin.register(Project)
class ProjectAdmin(admin.ModelAdmin):
    list_display = ('title', 'category', 'status', 'target_amount', 'current_amount', 'progress', 'created_at')
    list_filter = ('status', 'category', RecentDateFilter)
    search_fields = ('title', 'description', 'category')
    date_hierarchy = 'created_at'
    ordering = ('-created_at',)
    actions = ['recompute_totals']
    fieldsets = (
        (None, {'fields': ('title', 'category', 'status', 'description')}),
        ('Funding', {
            'fields': ('target_amount', 'current_amount'),
            'description': "The collected amount is maintained from completed donations and cannot be edited.",
        }),
        ('Image', {'fields': ('image', 'image_url')}),
        ('Meta', {'fields': ('created_at', 'updated_at')}),
    )
    readonly_fields = ('current_amount', 'created_at', 'updated_at')

    def progress(self, obj: Project):
        return format_html('{}&nbsp;%', obj.progress_percent)
    progress.short_description = 'Progress'

    def recompute_totals(self, request, queryset):
        changed = 0
        for project in queryset:
            before = project.current_amount
            if project.recompute_total() != before:
                changed += 1
        self.message_user(request, f"Totals recomputed. {changed} project(s) corrected.")
    recompute_totals.short_description = "Recompute collected amounts from completed donations"


@admin.register(SiteSetting)
class SiteSettingAdmin(admin.ModelAdmin):
    list_display = ('key', 'value', 'type', 'updated_at')
    list_filter = ('type',)
    search_fields = ('key', 'description')
    actions = ['reset_all']

    def reset_all(self, request, queryset):
        count = SiteSetting.reset_defaults()
        self.message_user(request, f"{count} setting(s) restored to defaults.")
    reset_all.short_description = "Reset every setting to its default value"
