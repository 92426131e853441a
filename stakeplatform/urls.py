"""URL routing for the engine API + the local payment gateway stub.


The /api/ namespace exposes engine operations and read models; /stub/gateway/
exposes the deterministic gateway used by StubGatewayAdapter. In production the
stub is replaced by NOWPayments.
"""

from django.contrib import admin
from django.urls import path, include


urlpatterns = [
	path("admin/", admin.site.urls),
	path("api/", include("api.urls")),
	path("stub/gateway/", include("gateway_stub.urls")),
]
