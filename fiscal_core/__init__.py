"""Validación de identificadores fiscales y ledger de facturas."""
