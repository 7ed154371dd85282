# This file contains shared state that needs to be accessible across different handlers.
# Using a dedicated file avoids circular import issues.

# Silent sessions already reported to admins.
# Key: session_id, Value: last_fix_at (or start_time) the alert was sent for,
# so one silence period produces one alert.
inactivity_alerts = {}
