"""HTML bodies for transactional emails.

Every builder returns ``(subject, html)``; user-supplied text is escaped.
"""

from datetime import date
from html import escape


def _format_date(value: date | None) -> str:
    return value.strftime('%d %B %Y') if value else ''


def _wrap(title: str, body: str) -> str:
    return (
        '<div style="font-family: Arial, sans-serif; color: #1f2937; max-width: 560px;">'
        f'<h2 style="color: #0d9488;">{escape(title)}</h2>'
        f'{body}'
        '<p style="color: #6b7280; font-size: 12px;">PhysioMe clinic booking</p>'
        '</div>'
    )


def _line(label: str, value) -> str:
    if value in (None, ''):
        return ''
    return f'<p><strong>{escape(label)}:</strong> {escape(str(value))}</p>'


def appointment_booked_for_patient(patient, therapist, appointment) -> tuple[str, str]:
    body = ''.join([
        _line('Date', _format_date(appointment.date)),
        _line('Time', appointment.time),
        _line('Type', appointment.type),
        _line('Physiotherapist', therapist.name),
        _line('Notes', appointment.notes),
        '<p>Your request is pending until the physiotherapist confirms it.</p>',
    ])
    return 'Appointment Confirmation', _wrap('Your appointment has been booked', body)


def appointment_booked_for_therapist(patient, therapist, appointment) -> tuple[str, str]:
    body = ''.join([
        _line('Patient', patient.name or patient.email),
        _line('Date', _format_date(appointment.date)),
        _line('Time', appointment.time),
        _line('Type', appointment.type),
        _line('Notes', appointment.notes),
    ])
    return 'New Appointment Scheduled', _wrap('A new appointment has been scheduled', body)


def appointment_status_update(recipient, actor, appointment) -> tuple[str, str]:
    body = ''.join([
        _line('Date', _format_date(appointment.date)),
        _line('Time', appointment.time),
        _line('New status', appointment.status),
        _line('Cancellation reason', appointment.cancellation_reason),
        _line('Notes', appointment.notes),
        _line('Updated by', actor.name or actor.email),
    ])
    return 'Appointment Status Update', _wrap('Your appointment status has been updated', body)


def treatment_plan_assigned(patient, therapist, plan) -> tuple[str, str]:
    goals = ''.join(f'<li>{escape(goal)}</li>' for goal in plan.goals or [])
    body = ''.join([
        _line('Title', plan.title),
        _line('Description', plan.description),
        _line('Physiotherapist', therapist.name),
        _line('Start date', _format_date(plan.start_date)),
        _line('End date', _format_date(plan.end_date)),
        f'<h3>Goals</h3><ul>{goals}</ul>' if goals else '',
        '<p>Log in to see the complete plan and its exercises.</p>',
    ])
    return 'New Treatment Plan Assigned', _wrap('A new treatment plan has been assigned to you', body)


def progress_report(therapist, patient, entry) -> tuple[str, str]:
    patient_name = patient.name or patient.email
    media = ''
    if entry.media_url:
        url = escape(entry.media_url, quote=True)
        media = f'<p><strong>Media:</strong> <a href="{url}">{url}</a></p>'
    body = ''.join([
        _line('Pain level', entry.pain_level),
        _line('Mobility', entry.mobility),
        _line('Strength', entry.strength),
        _line('Notes', entry.notes),
        media,
    ])
    return f'Progress Report for {patient_name}', _wrap(f'Progress report for {patient_name}', body)
