USER = "user"
ADMIN = "admin"


def resolve_role(email, admin_suffix):
    """Derive the role for a verified email address.

    Only the domain suffix is considered; the result is stored with the
    session at login and never recomputed afterwards.
    """
    if email and admin_suffix and email.lower().endswith(admin_suffix.lower()):
        return ADMIN
    return USER
