"""Task scheduling: task creation, due-task selection and adaptive frequency."""
