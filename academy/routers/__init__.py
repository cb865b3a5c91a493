from academy.routers import billing, conflicts, invoices, reschedule_requests, sessions, subscriptions, teachers

__all__ = [
    'billing',
    'conflicts',
    'invoices',
    'reschedule_requests',
    'sessions',
    'subscriptions',
    'teachers',
]
