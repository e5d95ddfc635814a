"""
OAuth scope classification for the consent screen.

Maps raw OAuth scope strings (including legacy aliases still carried by
older clients) into the human-readable permission groups shown on the
consent screen, and strips scopes the signed-in user is not allowed to
grant.

The role-gated scope set mirrors ADMIN_ONLY_SCOPES enforced by the events
API. Filtering here only keeps the consent screen honest; the API re-checks
every approval. Any change to which scopes are role-gated must be made in
both places.
"""

from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Set

from .oauth_models import ScopeGroup


SCOPE_TO_GROUP: Dict[str, str] = {
    "openid": "identity",
    "user": "profile",
    "read:user": "profile",
    "user:email": "profile",
    "profile": "profile",
    "read:events": "events",
    "write:events": "events",
    "events:read": "events",
    "rsvp:read": "events",
    "rsvp:write": "events",
    "read:groups": "groups",
    "groups:read": "groups",
    "read:favorites": "favorites",
    "write:favorites": "favorites",
    "favorites:read": "favorites",
    "favorites:write": "favorites",
    "read:portfolio": "portfolio",
    "write:portfolio": "portfolio",
    "manage:groups": "management",
    "manage:events": "management",
    "manage:checkins": "management",
    "manage:badges": "management",
    "admin": "admin",
    "offline_access": "offline",
}

GROUP_DISPLAY_ORDER: List[str] = [
    "identity", "profile", "events", "groups", "favorites",
    "portfolio", "management", "admin", "offline",
]

UNKNOWN_GROUP_ORDER = 99

ADMIN_ROLES: FrozenSet[str] = frozenset({"admin", "superadmin"})

# Keep in sync with ADMIN_ONLY_SCOPES on the events API
ROLE_GATED_SCOPES: FrozenSet[str] = frozenset({"admin"})

# Short labels for the authorized-apps list
SCOPE_LABELS: Dict[str, str] = {
    "openid": "OpenID Connect",
    "user": "Profile (full)",
    "read:user": "Profile (read)",
    "user:email": "Email",
    "read:events": "Events",
    "write:events": "Events (write)",
    "read:groups": "Groups",
    "read:favorites": "Favorites (read)",
    "write:favorites": "Favorites (write)",
    "read:portfolio": "Portfolio (read)",
    "write:portfolio": "Portfolio (write)",
    "manage:groups": "Manage groups",
    "manage:events": "Manage events",
    "manage:checkins": "Manage checkins",
    "manage:badges": "Manage badges",
    "admin": "Admin",
    "offline_access": "Background access",
    # Legacy
    "profile": "Profile",
    "events:read": "Events",
    "groups:read": "Groups",
    "rsvp:read": "RSVPs (read)",
    "rsvp:write": "RSVPs (write)",
    "favorites:read": "Favorites (read)",
    "favorites:write": "Favorites (write)",
}

MANAGEMENT_CAPABILITIES = [
    ("manage:groups", "groups"),
    ("manage:events", "events"),
    ("manage:checkins", "check-ins"),
    ("manage:badges", "badges"),
]


def _join_capabilities(capabilities: Sequence[str]) -> str:
    """Join as "a, b, and c"; a single item stands alone."""
    if not capabilities:
        return "resources"
    if len(capabilities) == 1:
        return capabilities[0]
    return ", ".join(capabilities[:-1]) + ", and " + capabilities[-1]


def describe_group(group_key: str, scopes: Set[str]) -> Optional[Dict[str, str]]:
    """
    Resolve the label, icon and description for a permission group.

    The description depends on which raw scopes were requested for the
    group, e.g. a favorites group reads differently when a write scope is
    present.

    Args:
        group_key: Group identifier from the scope table
        scopes: Raw scopes requested for this group

    Returns:
        dict with ``label``, ``icon`` and ``description``, or None for an
        unknown group
    """
    if group_key == "identity":
        return {"label": "Identity", "icon": "id",
                "description": "Verify your identity and receive an ID token"}

    if group_key == "profile":
        has_full_user = "user" in scopes or "profile" in scopes
        has_email = "user:email" in scopes
        has_read_user = "read:user" in scopes
        if has_full_user:
            return {"label": "Your Profile", "icon": "user",
                    "description": "Read and update your profile, email, and avatar"}
        if has_read_user and has_email:
            return {"label": "Your Profile", "icon": "user",
                    "description": "View your profile information and email address"}
        if has_read_user:
            return {"label": "Your Profile", "icon": "user",
                    "description": "View your public profile information"}
        if has_email:
            return {"label": "Email Address", "icon": "email",
                    "description": "View your email address"}
        return {"label": "Your Profile", "icon": "user",
                "description": "View your profile information"}

    if group_key == "events":
        if "write:events" in scopes or "rsvp:write" in scopes:
            return {"label": "Events", "icon": "calendar",
                    "description": "View events and RSVP or check in on your behalf"}
        return {"label": "Events", "icon": "calendar",
                "description": "View upcoming events and event details"}

    if group_key == "groups":
        return {"label": "Groups", "icon": "users",
                "description": "View tech groups and community details"}

    if group_key == "favorites":
        if "write:favorites" in scopes or "favorites:write" in scopes:
            return {"label": "Favorites", "icon": "heart",
                    "description": "View and manage your favorite groups"}
        return {"label": "Favorites", "icon": "heart",
                "description": "See which groups you've favorited"}

    if group_key == "portfolio":
        if "write:portfolio" in scopes:
            return {"label": "Portfolio", "icon": "briefcase",
                    "description": "View and manage your portfolio items and projects"}
        return {"label": "Portfolio", "icon": "briefcase",
                "description": "View your portfolio items and projects"}

    if group_key == "management":
        capabilities = [name for scope, name in MANAGEMENT_CAPABILITIES if scope in scopes]
        return {"label": "Group Management", "icon": "settings",
                "description": f"Create and manage {_join_capabilities(capabilities)} "
                               "in groups you own or co-manage"}

    if group_key == "admin":
        return {"label": "Administration", "icon": "shield",
                "description": "Full administrative access to the Tampa.dev platform"}

    if group_key == "offline":
        return {"label": "Background Access", "icon": "refresh",
                "description": "Stay signed in and access your data in the background"}

    return None


class ScopeClassifier:
    """
    Groups requested scopes for display and filters them by role.

    The lookup tables are injected so tests and alternative deployments can
    supply their own without patching module state. Instances hold no
    per-request state.
    """

    def __init__(self,
                 scope_to_group: Optional[Mapping[str, str]] = None,
                 group_order: Optional[Sequence[str]] = None,
                 admin_roles: Optional[Iterable[str]] = None,
                 role_gated_scopes: Optional[Iterable[str]] = None):
        self.scope_to_group = dict(SCOPE_TO_GROUP if scope_to_group is None else scope_to_group)
        self.group_order = list(GROUP_DISPLAY_ORDER if group_order is None else group_order)
        self.admin_roles = frozenset(ADMIN_ROLES if admin_roles is None else admin_roles)
        self.role_gated_scopes = frozenset(
            ROLE_GATED_SCOPES if role_gated_scopes is None else role_gated_scopes
        )

    def is_privileged(self, role: Optional[str]) -> bool:
        return role in self.admin_roles

    def filter_scopes_for_role(self, raw_scopes: Sequence[str], role: Optional[str]) -> List[str]:
        """
        Drop role-gated scopes the user cannot grant.

        Order and duplicates are preserved; unknown scopes pass through
        untouched (grouping ignores them later).

        Args:
            raw_scopes: Scopes as requested by the client
            role: The signed-in user's role

        Returns:
            List[str]: Scopes the user may grant
        """
        if self.is_privileged(role):
            return list(raw_scopes)
        return [scope for scope in raw_scopes if scope not in self.role_gated_scopes]

    def group_scopes(self, scopes: Sequence[str]) -> List[ScopeGroup]:
        """
        Collapse raw scopes into ordered, de-duplicated display groups.

        Args:
            scopes: Role-filtered scopes

        Returns:
            List[ScopeGroup]: One entry per distinct known group, sorted by
            display order; unknown groups last in encounter order
        """
        grouped: Dict[str, Set[str]] = {}
        for scope in scopes:
            group_key = self.scope_to_group.get(scope)
            if group_key is None:
                continue
            grouped.setdefault(group_key, set()).add(scope)

        result = []
        for group_key, scope_set in grouped.items():
            display = describe_group(group_key, scope_set)
            if display is None:
                continue
            order = (self.group_order.index(group_key)
                     if group_key in self.group_order else UNKNOWN_GROUP_ORDER)
            result.append(ScopeGroup(key=group_key, order=order, **display))

        # sorted() is stable, so equal orders keep encounter order
        return sorted(result, key=lambda group: group.order)


def scope_label(scope: str) -> str:
    """Short label for a raw scope; unknown scopes are shown as-is."""
    return SCOPE_LABELS.get(scope, scope)


default_classifier = ScopeClassifier()


def filter_scopes_for_role(raw_scopes: Sequence[str], role: Optional[str]) -> List[str]:
    """Filter scopes with the default tables."""
    return default_classifier.filter_scopes_for_role(raw_scopes, role)


def group_scopes(scopes: Sequence[str]) -> List[ScopeGroup]:
    """Group scopes with the default tables."""
    return default_classifier.group_scopes(scopes)
