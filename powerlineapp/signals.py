# powerlineapp/signals.py
# ----------------------------------------------------------
# Hooks for collaborators (notifications, reporting).
# Both are sent only after the database transaction commits.
# ----------------------------------------------------------
from django.dispatch import Signal

# kwargs: position
position_placed = Signal()

# kwargs: event (CommissionEvent)
commission_emitted = Signal()
