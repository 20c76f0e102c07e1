from django.urls import path
from . import views

urlpatterns = [
    path('plans/', views.PaymentPlanCreateView.as_view(), name='billing-plan-create'),
    path('plans/<int:plan_id>/', views.PaymentPlanDetailView.as_view(), name='billing-plan-detail'),
    path('plans/<int:plan_id>/payments/', views.PlanPaymentView.as_view(), name='billing-plan-payment'),
    path('plans/<int:plan_id>/status/', views.PlanStatusView.as_view(), name='billing-plan-status'),

    # Scheduled job
    path('cron/payment-reminders/', views.PaymentReminderCronView.as_view(), name='billing-payment-reminders'),
]
