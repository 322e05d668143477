"""dslctl — DSL lifecycle engine for onboarding and investor workflows."""

__version__ = "0.1.0"
