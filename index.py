from aws_lambda_powertools.utilities.typing import LambdaContext

from imghandler.handler import index as handler
from imghandler.typing import ApiEvent, ApiResponse


def image_handler_lambda_handler(
    event: ApiEvent,
    _: LambdaContext,
) -> ApiResponse:
  # # For debugging
  # print('event:')
  # print(json.dumps(event))

  ret = handler.lambda_main(event)

  # # For debugging
  # print('return:')
  # print(json.dumps(ret))

  return ret
