"""
Validaciones de seguridad en arranque para APP_ENV=prod.
Si alguna falla, se lanza RuntimeError y la aplicación no inicia.
"""
from billing_sync.core.config import settings

INSECURE_DEFAULTS = {
    "CRON_BASIC_PASSWORD": "change_me_cron_password",
}


def validate_production_config() -> None:
    """Comprueba que en producción no se usen CORS *, credenciales cron ni contraseñas DB por defecto."""
    if (getattr(settings, "app_env", "dev") or "dev").strip().lower() != "prod":
        return

    errors: list[str] = []

    if not (settings.cors_origins or "").strip():
        errors.append("CORS_ORIGINS no puede estar vacío en producción.")
    elif settings.cors_origins.strip() == "*":
        errors.append("CORS_ORIGINS no puede ser '*' en producción.")

    cron_password = (settings.cron_basic_password or "").strip()
    if cron_password in ("", INSECURE_DEFAULTS["CRON_BASIC_PASSWORD"]) or len(cron_password) < 12:
        errors.append("CRON_BASIC_PASSWORD debe estar definido (min. 12 caracteres) y no usar el valor por defecto.")

    db_url = (getattr(settings, "database_url", "") or "").strip().lower()
    if not db_url.startswith("postgresql"):
        errors.append("DATABASE_URL debe apuntar a PostgreSQL en producción.")
    else:
        postgres_pwd = (getattr(settings, "postgres_password", "") or "").strip()
        if not postgres_pwd or "change_me" in postgres_pwd:
            errors.append("POSTGRES_PASSWORD debe estar definido y no usar valor por defecto en producción.")
        if "change_me" in (settings.database_url or ""):
            errors.append("DATABASE_URL no debe contener contraseña por defecto (change_me) en producción.")

    if not (settings.mysql_host or "").strip() or not (settings.mysql_database or "").strip():
        errors.append("MYSQL_HOST y MYSQL_DATABASE son obligatorios en producción.")

    if errors:
        raise RuntimeError("Configuración de producción inválida:\n  - " + "\n  - ".join(errors))
