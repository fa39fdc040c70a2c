# /crm_dialer/utils/metrics.py

from prometheus_client import Counter, Histogram, Gauge

# All Prometheus metrics used by the service live here.

# Workflow engine
flow_runs_counter = Counter('flow_runs_total', 'Flow executions by outcome', ['outcome'])
action_dispatch_counter = Counter('flow_action_dispatches_total', 'Action dispatches', ['action_type', 'status'])
events_processed_counter = Counter('lead_events_processed_total', 'Inbound lead events processed', ['status'])

# Update coalescer
pending_updates_gauge = Gauge('lead_updates_pending', 'Lead updates waiting for the next flush')
coalescer_flush_counter = Counter('lead_update_flushes_total', 'Coalescer flushes', ['trigger'])
coalescer_chunk_counter = Counter('lead_update_chunks_total', 'Lead update chunks sent downstream', ['status'])

# Dispatch queue
dispatch_batches_counter = Counter('dispatch_batches_total', 'Batches processed by the dispatch queue', ['request_type', 'status'])
dispatch_queue_depth_gauge = Gauge('dispatch_queue_depth', 'Batches waiting in the dispatch queue')
dispatch_inflight_gauge = Gauge('dispatch_inflight_batches', 'Batches currently being processed')
token_wait_histogram = Histogram('dispatch_token_wait_seconds', 'Time spent waiting for a rate-limit token')

# Downstream HTTP
external_requests_counter = Counter('external_requests_total', 'Calls to external platforms', ['platform', 'operation', 'status'])
circuit_state_gauge = Gauge('circuit_breaker_state', 'Circuit state (0 closed, 1 half-open, 2 open)', ['circuit'])
circuit_rejections_counter = Counter('circuit_breaker_rejections_total', 'Calls refused by an open circuit', ['circuit'])
