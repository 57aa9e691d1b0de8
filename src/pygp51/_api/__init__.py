"""GP51 ``/webapi`` action modules (internal)."""
