import os

# модули ridemarket создают engine при импорте; в тестах Postgres не нужен
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("PUSH_GATEWAY_URL", "")
