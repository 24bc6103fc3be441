from typing import Any, Dict
import storefront.infra.supabase_client as supabase_client

# La gestion des comptes est externe: ce module ne fait que résoudre un jeton en principal.

def determine_role(metadata: Dict[str, Any] | None) -> str:
    role_lower = str((metadata or {}).get("role", "")).lower()
    if role_lower == "admin":
        return "admin"
    return "user"

def get_user_from_access_token(access_token: str) -> Dict[str, Any]:
    """Récupère et normalise l’utilisateur depuis supabase.auth.get_user(access_token)."""
    res = supabase_client.get_supabase().auth.get_user(access_token)
    user = getattr(res, "user", None) or {}
    if not isinstance(user, dict):
        user = {
            "id": getattr(user, "id", None),
            "email": getattr(user, "email", None),
            "user_metadata": getattr(user, "user_metadata", None),
        }
    return user or {}

def get_user_from_token(access_token: str) -> Dict[str, Any]:
    """Normalise l'utilisateur Supabase en principal {id, email, metadata, role, token}."""
    raw = get_user_from_access_token(access_token)
    metadata = raw.get("user_metadata") or {}
    return {
        "id": raw.get("id"),
        "email": raw.get("email"),
        "metadata": metadata,
        "role": determine_role(metadata),
        "token": access_token,
    }
