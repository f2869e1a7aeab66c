from . import account_endpoints, admin_endpoints, health_endpoints

__all__ = [
	"account_endpoints",
	"admin_endpoints",
	"health_endpoints",
]
