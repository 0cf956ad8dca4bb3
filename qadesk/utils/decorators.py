from functools import wraps
from flask import abort
from flask_login import current_user

def roles_required(*roles):
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if not current_user.is_authenticated:
                abort(401)
            if getattr(current_user, "role", None) not in roles:
                abort(403)
            return view(*args, **kwargs)
        return wrapped
    return decorator

admin_required = roles_required("owner", "admin")
# who may import recordings and hand them out to analysts
allocator_required = roles_required("owner", "admin", "manager", "team_lead")
