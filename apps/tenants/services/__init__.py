"""
Services for tenant onboarding.
"""
from .onboarding_service import (
    OnboardingRequest,
    OnboardingResult,
    OnboardingService,
    OnboardingState,
)

__all__ = [
    'OnboardingRequest',
    'OnboardingResult',
    'OnboardingService',
    'OnboardingState',
]
