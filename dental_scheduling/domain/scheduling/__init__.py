"""
Scheduling Domain

Appointment booking, slot ledger and same-day treatment queue for the clinic.

Structure:
```
dental_scheduling/domain/scheduling/
├── __init__.py
├── clock.py                # Injectable "now" (system / fixed)
├── exceptions.py           # Business-rule error taxonomy
├── time_calculator.py      # Working hours parsing, slot partitioning
├── schemas.py              # Request / response schemas
├── repository.py           # Database queries, counters, dentist-day locks
├── availability_service.py # Bookable slots for a dentist-day
├── slot_ledger.py          # Slot materialization, booking, blocking
├── appointment_service.py  # Appointment state machine
├── queue_service.py        # Daily treatment queue
├── jobs.py                 # Reconciliation jobs (expire, migrate, cleanup, reminders)
└── router.py               # /scheduling endpoints
```

STATE MACHINES:

Appointment: pending → confirmed → completed, any non-terminal → cancelled.
Queue entry: waiting → called → in_treatment → completed.

INVARIANTS (enforced by the store, not by check-then-act):
- one Slot per (dentist_code, date, time_slot)
- one non-cancelled Appointment per (dentist_code, appointment_at)
- one QueueEntry position per (dentist_code, date), one entry per appointment
- codes come from row-locked counters

Writers on the same dentist-day serialize on the DentistDay row lock, so the
daily cap and max+1 queue positions are computed under the lock.
"""
