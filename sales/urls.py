from rest_framework.routers import DefaultRouter

from sales.views import CustomerViewSet, QuotationViewSet, SaleViewSet

router = DefaultRouter()
router.register(r"customers", CustomerViewSet, basename="customer")
router.register(r"quotations", QuotationViewSet, basename="quotation")
router.register(r"sales", SaleViewSet, basename="sale")

urlpatterns = router.urls
