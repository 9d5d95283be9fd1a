"""Usage aggregation core: token estimation, cost, session blocks and percentages."""
