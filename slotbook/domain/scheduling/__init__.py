"""
Scheduling Domain

Providers publish time slots, requesters ask for them, and a FIFO waitlist
absorbs demand that has no slot yet.

STRUCTURE:
```
slotbook/domain/scheduling/
├── __init__.py
├── schemas.py       # Request/response models and field validation
├── repository.py    # Slot and request queries, compare-and-update writes
├── timeutils.py     # Weekday, HH:MM and overlap helpers
├── policies.py      # Who may do what (pure predicates over Actor)
├── waitlist.py      # FIFO buckets keyed by (provider-or-ANY, date, time)
├── cancellation.py  # Reassign / release / remove decisions
├── matching.py      # MatchingEngine, the only write surface
├── views.py         # Scoped reads and virtual waitlisted entries
└── router.py        # /slots endpoints
```

STATE MACHINES:
- Slot: available -> booked -> {completed | available (released) | booked (reassigned)};
  available -> {cancelled | removed}; booked -> cancelled (fallback).
- StudentRequest: pending -> {waiting | assigned | rejected};
  waiting -> {assigned | cancelled}.

CONCURRENCY:
Every operation holds the lock for each (provider, date, time) key it touches
(see slotbook.locks), writes through compare-and-update on status + version,
and commits once. Notifications go out only after that commit.
"""
