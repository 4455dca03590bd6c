"""
safety — Campus safety flows.

Modules:
    models                — Domain entities (SOS, Guardian, Follow Me, ...)
    sos_service           — SOS trigger, enrichment, resolve
    guardian_service      — Escorted journeys with route deviation alerts
    follow_me_service     — Time-boxed live location sharing
    safety_alert_service  — Community reports broadcast to nearby users
    jobs                  — Persistent background job queue
"""
