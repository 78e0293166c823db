"""
csm-admin Test Suite

Test categories:
- test_xname.py, test_nodeset.py - identifiers and node sets
- test_expression.py, test_resolver.py - group expressions and resolution
- test_transport.py, test_credentials.py, test_circuit_breaker.py - service client
- test_clients.py - backend adapters and client wiring
- test_backends.py, test_orchestrator.py - operation orchestration
- test_console.py - console bridge and exec streams
- test_config.py, test_log_context.py - configuration and logging
"""
