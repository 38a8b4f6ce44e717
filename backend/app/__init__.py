"""Family consent workflow backend application package."""
