from django.contrib import admin
from django.urls import path, include
from django.conf import settings
from django.conf.urls.static import static

admin.site.site_header = 'DonateAnon administration'
admin.site.site_title = 'DonateAnon'

urlpatterns = [
    path('admin/', admin.site.urls),
    path('', include('payments.urls', namespace='payments')),
    path('', include('website.urls', namespace='website')),
]

if settings.DEBUG:
    urlpatterns += static(settings.MEDIA_URL, document_root=settings.MEDIA_ROOT)
