"""Sample project used to demonstrate the example directives."""
