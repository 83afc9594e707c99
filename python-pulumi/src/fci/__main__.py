import fci.pulumi_resources.aws_courses_stack

fci.pulumi_resources.aws_courses_stack.AWSCoursesStack.autoload()
