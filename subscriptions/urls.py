from django.urls import path
from . import views

app_name = 'subscriptions'

urlpatterns = [
    path('plans/', views.plans, name='plans'),
    path('current/', views.current_subscription, name='current'),
    path('create/', views.create_subscription, name='create'),
    path('update/', views.update_subscription, name='update'),
    path('cancel/', views.cancel_subscription, name='cancel'),
    path('reactivate/', views.reactivate_subscription, name='reactivate'),
    path('billing-history/', views.billing_history, name='billing_history'),
    path('payment-method/', views.payment_method, name='payment_method'),
    path('simulate-payment/', views.simulate_payment, name='simulate_payment'),
    path('entitlements/', views.entitlements, name='entitlements'),
]
