from django.contrib import admin
from .models import BillingEvent, PaymentMethod, Subscription


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    list_display = ('organization', 'plan_id', 'status', 'billing_interval', 'current_period_end', 'cancel_at_period_end')
    list_filter = ('status', 'plan_id', 'billing_interval')
    search_fields = ('organization__name',)
    readonly_fields = ('created_at', 'updated_at')


@admin.register(BillingEvent)
class BillingEventAdmin(admin.ModelAdmin):
    list_display = ('organization', 'type', 'amount', 'currency', 'status', 'invoice_number', 'created_at')
    list_filter = ('type', 'status')
    search_fields = ('organization__name', 'invoice_number')

    # The ledger is append-only.
    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(PaymentMethod)
class PaymentMethodAdmin(admin.ModelAdmin):
    list_display = ('organization', 'brand', 'last4', 'exp_month', 'exp_year', 'is_default')
    list_filter = ('is_default', 'brand')
