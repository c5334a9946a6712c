"""Authentication and multi-factor verification core of the onboarding portal."""
