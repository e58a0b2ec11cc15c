from django.contrib import admin
from django.urls import path, include

urlpatterns = [
    path('admin/', admin.site.urls),

    # Subscription and billing command surface (JSON)
    path('subscriptions/', include('subscriptions.urls', namespace='subscriptions')),
]
