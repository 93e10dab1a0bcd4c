"""
API Stack
=========
Handler function, its table grant, the REST API and every route on it.

Route set (one system of record for the deployment):

  path                 method              auth            rate-limited
  /shortcodes          GET POST            bearer token    no
  /shortcodes/{code}   GET PUT DELETE      bearer token    no
  /metrics             GET                 bearer token    no
  /metrics/{code}      GET                 bearer token    no
  /s/{code}            GET                 public          no
  /generate            POST                API key         10 req/s, burst 2

With auth disabled the bearer-token routes become public. The catch-all
`/` ANY route some revisions carried is not part of this set.
"""
from __future__ import annotations

from provisioner.descriptors import READ_WRITE_ACTIONS, ResourceDescriptor, ref
from provisioner.resources import api_key, compute_unit, grant, route, routing_layer, stage, usage_plan

from urlshortener.auth_stack import USER_POOL
from urlshortener.config import DeploymentConfig
from urlshortener.database_stack import TABLE

HANDLER = "URLShortenerHandler"
API = "ShortcodesApi"
STAGE = "ApiStage"
GENERATE_KEY = "GenerateApiKey"
GENERATE_PLAN = "GenerateUsagePlan"

GENERATE_RATE_LIMIT = 10
GENERATE_BURST_LIMIT = 2

# (logical id, path, method, needs bearer token)
ROUTES = [
    ("RouteShortcodesGet", "/shortcodes", "GET", True),
    ("RouteShortcodesPost", "/shortcodes", "POST", True),
    ("RouteShortcodeGet", "/shortcodes/{code}", "GET", True),
    ("RouteShortcodePut", "/shortcodes/{code}", "PUT", True),
    ("RouteShortcodeDelete", "/shortcodes/{code}", "DELETE", True),
    ("RouteMetricsGet", "/metrics", "GET", True),
    ("RouteMetricGet", "/metrics/{code}", "GET", True),
    ("RouteRedirect", "/s/{code}", "GET", False),
]
GENERATE_ROUTE = "RouteGenerate"


def handler_environment(config: DeploymentConfig) -> dict:
    environment = {
        "DYNAMODB_TABLE_NAME": ref(TABLE, "tableName"),
        "REGION": config.region,
    }
    if config.auth_enabled:
        environment["USER_POOL_ID"] = ref(USER_POOL, "userPoolId")
        environment["USER_POOL_CLIENT_ID"] = ref(USER_POOL, "userPoolClientId")
    return environment


def api_stack(config: DeploymentConfig) -> list[ResourceDescriptor]:
    prefix = config.stack_name
    authorizer = USER_POOL if config.auth_enabled else None

    descriptors = [
        compute_unit(
            HANDLER,
            function_name=f"{prefix}-handler",
            code=config.artifact,
            runtime="provided.al2",
            handler="main",
            architecture="arm64",
            environment=handler_environment(config),
        ),
        grant(
            "ShortcodesTableReadWrite",
            principal=HANDLER,
            resource=TABLE,
            actions=READ_WRITE_ACTIONS,
            # goes with the table on teardown
            removable=config.removable_table,
        ),
        routing_layer(API, api_name="Shortcodes Service", description="This service handles shortcodes."),
    ]

    for logical_id, path, method, needs_token in ROUTES:
        descriptors.append(
            route(
                logical_id,
                routing_layer=API,
                path=path,
                method=method,
                target=HANDLER,
                authorizer=authorizer if needs_token else None,
            )
        )
    descriptors.append(
        route(
            GENERATE_ROUTE,
            routing_layer=API,
            path="/generate",
            method="POST",
            target=HANDLER,
            api_key_required=True,
            throttle={"rateLimit": GENERATE_RATE_LIMIT, "burstLimit": GENERATE_BURST_LIMIT},
        )
    )

    descriptors += [
        stage(STAGE, routing_layer=API, stage_name=config.stage_name),
        api_key(GENERATE_KEY, key_name=f"{prefix}-generate"),
        usage_plan(
            GENERATE_PLAN,
            plan_name=f"{prefix}-generate",
            stage=STAGE,
            rate_limit=GENERATE_RATE_LIMIT,
            burst_limit=GENERATE_BURST_LIMIT,
            routes=[GENERATE_ROUTE],
            api_keys=[GENERATE_KEY],
        ),
    ]
    return descriptors
