"""HTTP API families served by the gateway.

  chat_completions   OpenAI ``/v1/chat/completions`` (stateless)
  responses          OpenAI ``/v1/responses`` (stored / chained / background)
  multimodal         ``/v1/multimodal`` message+call trace API
  sessions           session admin and health
"""
