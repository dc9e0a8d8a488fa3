# rsvpbot/credentials.py
import os

# 360dialog WhatsApp Business API
D360_API_KEY = os.getenv("D360_API_KEY")
D360_BASE_URL = (os.getenv("D360_BASE_URL") or "https://waba-v2.360dialog.io").rstrip("/")

try:
    D360_TIMEOUT_SECONDS = float(os.getenv("D360_TIMEOUT_SECONDS") or 10)
except ValueError:
    D360_TIMEOUT_SECONDS = 10.0

# וולידציה בסיסית כדי לעלות שגיאה ברורה אם חסר משתנה
missing = [
    name
    for name, val in {
        "D360_API_KEY": D360_API_KEY,
    }.items()
    if not val
]

if missing:
    raise RuntimeError(
        f"Missing required env vars: {', '.join(missing)}. "
        "Set them in Render > Environment."
    )
