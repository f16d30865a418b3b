"""Pure domain layer: lifecycle rules, clocks and DTOs. No I/O."""
