"""Custom permission predicates.

Provides registration and lookup for predicates that a permission
matrix entry can reference instead of a plain minimum role, e.g.::

    update: {predicate: owner_only, minimumRole: customer}

The minimum role is always checked first; the predicate can only
narrow access further.
"""

from collections.abc import Callable

from tross.auth.types import PermissionContext

# Predicate signature: (PermissionContext) -> bool
PredicateFn = Callable[[PermissionContext], bool]


class PredicateRegistry:
    """Registry for permission predicates.

    Predicates must be registered before the permission matrix that
    references them is loaded.

    Example:
        @permission_predicate("owner_only")
        def owner_only(ctx: PermissionContext) -> bool:
            ...
    """

    _predicates: dict[str, PredicateFn] = {}

    @classmethod
    def register(cls, name: str, fn: PredicateFn) -> None:
        """Register a predicate by name.

        Idempotent: re-registering the same name is a no-op.
        """
        if name in cls._predicates:
            return
        cls._predicates[name] = fn

    @classmethod
    def get(cls, name: str) -> PredicateFn:
        """Get a registered predicate.

        Raises:
            ValueError: If the predicate is not registered
        """
        if name not in cls._predicates:
            raise ValueError(
                f"Permission predicate '{name}' is not registered. "
                "Predicates must be registered before the permission matrix is loaded."
            )
        return cls._predicates[name]

    @classmethod
    def is_registered(cls, name: str) -> bool:
        return name in cls._predicates

    @classmethod
    def list_registered(cls) -> list[str]:
        return sorted(cls._predicates.keys())

    @classmethod
    def clear(cls) -> None:
        """Clear all registrations. Primarily for testing."""
        cls._predicates.clear()


def permission_predicate(name: str) -> Callable[[PredicateFn], PredicateFn]:
    """Decorator to register a permission predicate."""

    def decorator(fn: PredicateFn) -> PredicateFn:
        PredicateRegistry.register(name, fn)
        return fn

    return decorator


def owner_only(ctx: PermissionContext) -> bool:
    if ctx.user_id is None or ctx.owner_id is None:
        return False
    return str(ctx.user_id) == str(ctx.owner_id)


def authenticated(ctx: PermissionContext) -> bool:
    return ctx.user_id is not None


def register_builtin_predicates() -> None:
    """Register framework-provided predicates. Safe to call repeatedly."""
    PredicateRegistry.register("owner_only", owner_only)
    PredicateRegistry.register("authenticated", authenticated)
