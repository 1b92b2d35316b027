from django.urls import path
from . import views
from . import views_admin

app_name = 'website'

urlpatterns = [
    path('api/projects', views.projects, name='projects'),
    path('api/projects/<int:pk>', views.project_detail, name='project_detail'),
    path('api/stats', views.stats, name='stats'),
    path('api/admin/login', views.admin_login, name='admin_login'),
    path('api/admin/settings', views.admin_settings, name='admin_settings'),
    path('api/upload/image', views.upload_image, name='upload_image'),
    # Staff dashboard: not under 'admin/' to avoid clashing with admin.site
    path('dashboard/', views_admin.dashboard, name='admin_dashboard'),
]
