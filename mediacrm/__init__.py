"""CRM back office: contacts, clinics and outbound email campaigns."""
