"""Source lifecycle: registry (state machine) and automated analyzer."""
