from rest_framework.routers import DefaultRouter

from inventory.views import (
    CostHistoryViewSet,
    InventoryItemViewSet,
    PurchaseOrderViewSet,
    PurchaseReceivingViewSet,
    StockTransferViewSet,
    SupplierPriceViewSet,
    SupplierViewSet,
)

router = DefaultRouter()
router.register(r"inventory", InventoryItemViewSet, basename="inventory-item")
router.register(r"suppliers", SupplierViewSet, basename="supplier")
router.register(r"supplier-prices", SupplierPriceViewSet, basename="supplier-price")
router.register(r"cost-history", CostHistoryViewSet, basename="cost-history")
router.register(r"purchase-orders", PurchaseOrderViewSet, basename="purchase-order")
router.register(r"purchase-receivings", PurchaseReceivingViewSet, basename="purchase-receiving")
router.register(r"stock-transfers", StockTransferViewSet, basename="stock-transfer")

urlpatterns = router.urls
