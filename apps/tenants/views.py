"""
API views for tenant onboarding.

Endpoints:
- POST /v1/onboarding - Create an organization and its administrator
"""
import logging

from rest_framework import status
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

from apps.tenants.serializers import OnboardingResultSerializer, OnboardingSerializer
from apps.tenants.services.onboarding_service import OnboardingRequest, OnboardingService

logger = logging.getLogger(__name__)


class OnboardingView(APIView):
    """
    POST /v1/onboarding

    Open endpoint: there is no actor until the administrator exists.
    Responds 201 with the new tenant and user ids, 409 when the
    organization, domain or email is taken, and an error carrying the
    failed step and rollback outcome when the saga fails.
    """
    authentication_classes = []
    permission_classes = [AllowAny]

    def post(self, request):
        serializer = OnboardingSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = OnboardingService().onboard(OnboardingRequest(**serializer.validated_data))

        logger.info(
            "Tenant onboarded via API",
            extra={'tenant_id': str(result.tenant_id), 'request_id': getattr(request, 'request_id', None)}
        )
        return Response(
            OnboardingResultSerializer({
                'tenant_id': result.tenant_id,
                'user_id': result.user_id,
                'state': result.state.value,
            }).data,
            status=status.HTTP_201_CREATED
        )
