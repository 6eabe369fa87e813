"""Pure domain logic: item lifecycle and progress bookkeeping."""
